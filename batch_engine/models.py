from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLING})


class JobScope(str, Enum):
    GLOBAL = "global"
    PARTITION = "partition"
    ENTITY = "entity"


QUALITY_BUCKETS = ("0-25", "26-50", "51-75", "76-100")


def quality_bucket(score: float) -> str:
    if score <= 25:
        return "0-25"
    if score <= 50:
        return "26-50"
    if score <= 75:
        return "51-75"
    return "76-100"


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass
class PipelineOptions:
    """Per-job switches handed unchanged to the item processor."""

    skip_enrichment: bool = False
    skip_annotation: bool = False
    force_reprocess: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "skip_enrichment": self.skip_enrichment,
            "skip_annotation": self.skip_annotation,
            "force_reprocess": self.force_reprocess,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PipelineOptions:
        data = data or {}
        return cls(
            skip_enrichment=bool(data.get("skip_enrichment", False)),
            skip_annotation=bool(data.get("skip_annotation", False)),
            force_reprocess=bool(data.get("force_reprocess", False)),
        )


@dataclass
class Job:
    job_id: str
    scope: JobScope
    scope_filter: str | None
    chunk_size: int
    status: JobStatus = JobStatus.PENDING
    options: PipelineOptions = field(default_factory=PipelineOptions)
    total_items: int = 0
    cursor: int = 0
    processed_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    enriched_count: int = 0
    annotated_count: int = 0
    total_quality_points: float = 0.0
    avg_quality_score: int | None = None
    quality_histogram: dict[str, int] = field(default_factory=dict)
    chunks_processed: int = 0
    consecutive_errors: int = 0
    cancel_requested: bool = False
    error_message: str | None = None
    lock_token: str | None = None
    last_chunk_stats: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_pct(self) -> float:
        if self.total_items <= 0:
            return 100.0 if self.status == JobStatus.COMPLETED else 0.0
        return round(min(self.cursor, self.total_items) * 100.0 / self.total_items, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "scope": self.scope.value,
            "scope_filter": self.scope_filter,
            "status": self.status.value,
            "options": self.options.as_dict(),
            "total_items": self.total_items,
            "cursor": self.cursor,
            "processed_count": self.processed_count,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "enriched_count": self.enriched_count,
            "annotated_count": self.annotated_count,
            "total_quality_points": self.total_quality_points,
            "avg_quality_score": self.avg_quality_score,
            "quality_histogram": dict(self.quality_histogram),
            "chunk_size": self.chunk_size,
            "chunks_processed": self.chunks_processed,
            "consecutive_errors": self.consecutive_errors,
            "cancel_requested": self.cancel_requested,
            "error_message": self.error_message,
            "is_locked": self.lock_token is not None,
            "last_chunk_stats": dict(self.last_chunk_stats) if self.last_chunk_stats else None,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "last_activity_at": to_iso(self.last_activity_at),
            "progress_pct": self.progress_pct,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            job_id=str(data["job_id"]),
            scope=JobScope(data["scope"]),
            scope_filter=data.get("scope_filter"),
            chunk_size=int(data["chunk_size"]),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            options=PipelineOptions.from_dict(data.get("options")),
            total_items=int(data.get("total_items", 0)),
            cursor=int(data.get("cursor", 0)),
            processed_count=int(data.get("processed_count", 0)),
            succeeded_count=int(data.get("succeeded_count", 0)),
            failed_count=int(data.get("failed_count", 0)),
            enriched_count=int(data.get("enriched_count", 0)),
            annotated_count=int(data.get("annotated_count", 0)),
            total_quality_points=float(data.get("total_quality_points", 0) or 0),
            avg_quality_score=(
                int(data["avg_quality_score"]) if data.get("avg_quality_score") is not None else None
            ),
            quality_histogram={str(k): int(v) for k, v in (data.get("quality_histogram") or {}).items()},
            chunks_processed=int(data.get("chunks_processed", 0)),
            consecutive_errors=int(data.get("consecutive_errors", 0)),
            cancel_requested=bool(data.get("cancel_requested", False)),
            error_message=data.get("error_message"),
            lock_token=data.get("lock_token"),
            last_chunk_stats=data.get("last_chunk_stats") or None,
            created_at=parse_iso(data.get("created_at")) or utcnow(),
            started_at=parse_iso(data.get("started_at")),
            completed_at=parse_iso(data.get("completed_at")),
            last_activity_at=parse_iso(data.get("last_activity_at")),
        )


@dataclass
class ChunkResult:
    job_id: str
    lock_acquired: bool
    status: JobStatus
    items_processed: int = 0
    succeeded: int = 0
    failed: int = 0
    is_job_complete: bool = False
    was_cancelled: bool = False
    was_paused: bool = False
    error_message: str | None = None
    continuation_scheduled: bool = False

    @property
    def should_continue(self) -> bool:
        if not self.lock_acquired:
            return False
        if self.is_job_complete or self.was_cancelled or self.was_paused:
            return False
        # A cancelling job needs one more chunk call to settle into cancelled.
        return self.status in {JobStatus.RUNNING, JobStatus.PENDING, JobStatus.CANCELLING}

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "lock_acquired": self.lock_acquired,
            "status": self.status.value,
            "items_processed": self.items_processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "is_job_complete": self.is_job_complete,
            "was_cancelled": self.was_cancelled,
            "was_paused": self.was_paused,
            "error_message": self.error_message,
            "continuation_scheduled": self.continuation_scheduled,
        }


@dataclass
class LiveMetricsSnapshot:
    job_id: str
    items_last_minute: int
    items_last_5_minutes: int
    rate_per_minute: float
    remaining_items: int
    eta_minutes: int | None
    eta_display: str | None
    last_item_at: datetime | None
    is_alive: bool
    computed_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "items_last_minute": self.items_last_minute,
            "items_last_5_minutes": self.items_last_5_minutes,
            "rate_per_minute": self.rate_per_minute,
            "remaining_items": self.remaining_items,
            "eta_minutes": self.eta_minutes,
            "eta_display": self.eta_display,
            "last_item_at": to_iso(self.last_item_at),
            "is_alive": self.is_alive,
            "computed_at": to_iso(self.computed_at),
        }
