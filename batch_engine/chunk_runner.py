"""Runs one bounded chunk of a job under a lease.

Progress for the chunk is written in a single guarded update at the end, so a
crash before commit leaves the cursor where it was and the chunk is replayed
(at-least-once). Cancellation and pause are cooperative: they are observed
between items, never in the middle of one.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from batch_engine.catalog import WorkItem, WorkItemProvider
from batch_engine.config import EngineSettings
from batch_engine.errors import job_not_found
from batch_engine.models import ChunkResult, Job, JobStatus, PipelineOptions, quality_bucket, utcnow
from batch_engine.processors import ItemOutcome, ItemProcessor

logger = logging.getLogger(__name__)

STOP_CANCELLED = "cancelled"
STOP_PAUSED = "paused"
STOP_CIRCUIT_OPEN = "circuit_open"
STOP_LEASE_LOST = "lease_lost"


class ConsecutiveErrorBreaker:
    def __init__(self, *, threshold: int, initial: int = 0) -> None:
        self.threshold = max(1, int(threshold))
        self.count = max(0, int(initial))

    @property
    def is_open(self) -> bool:
        return self.count >= self.threshold

    def record(self, success: bool) -> bool:
        """Returns True once the run of failures reaches the threshold."""
        self.count = 0 if success else self.count + 1
        return self.is_open


class ItemPacer:
    """Inter-item delay that backs off on failures and recovers toward the base on success."""

    def __init__(
        self,
        *,
        base_ms: int,
        max_ms: int,
        backoff: float = 1.5,
        cooldown: float = 0.9,
        current_ms: float | None = None,
    ) -> None:
        self.base_ms = max(0, int(base_ms))
        self.max_ms = max(self.base_ms, int(max_ms))
        self.backoff = backoff
        self.cooldown = cooldown
        start = self.base_ms if current_ms is None else float(current_ms)
        self.current_ms = min(max(start, self.base_ms), self.max_ms)

    def on_success(self) -> None:
        self.current_ms = max(self.base_ms, self.current_ms * self.cooldown)

    def on_failure(self) -> None:
        self.current_ms = min(self.max_ms, max(self.current_ms, 1.0) * self.backoff)

    @property
    def delay_s(self) -> float:
        return self.current_ms / 1000.0


class _ChunkTally:
    def __init__(self, job: Job) -> None:
        self.attempted = 0
        self.succeeded = 0
        self.failed = 0
        self.enriched = 0
        self.annotated = 0
        self.quality_points = 0.0
        self.histogram = dict(job.quality_histogram)

    def add(self, outcome: ItemOutcome) -> None:
        self.attempted += 1
        if not outcome.success:
            self.failed += 1
            return
        self.succeeded += 1
        if outcome.enriched:
            self.enriched += 1
        if outcome.annotated:
            self.annotated += 1
        if outcome.quality_score is not None:
            self.quality_points += outcome.quality_score
            bucket = quality_bucket(outcome.quality_score)
            self.histogram[bucket] = self.histogram.get(bucket, 0) + 1


class ChunkRunner:
    def __init__(
        self,
        *,
        repository: Any,
        provider: WorkItemProvider,
        processor: ItemProcessor,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.processor = processor
        self.settings = settings or EngineSettings()
        self._clock = clock
        self._sleep = sleep

    def run_chunk(self, job_id: str, *, force_lock: bool = False) -> ChunkResult:
        job = self.repository.get(job_id)
        if job is None:
            raise job_not_found(job_id)
        if job.is_terminal:
            return ChunkResult(
                job_id=job_id,
                lock_acquired=False,
                status=job.status,
                is_job_complete=job.status == JobStatus.COMPLETED,
                was_cancelled=job.status == JobStatus.CANCELLED,
            )
        if job.status == JobStatus.PAUSED:
            return ChunkResult(job_id=job_id, lock_acquired=False, status=job.status, was_paused=True)

        token = uuid.uuid4().hex
        leased = self.repository.try_acquire_lease(
            job_id=job_id,
            token=token,
            now=self._clock(),
            lock_timeout_s=self.settings.lock_timeout_s,
            force=force_lock,
        )
        if leased is None:
            logger.info("chunk_lock_busy job_id=%s force=%s", job_id, force_lock)
            current = self.repository.get(job_id)
            return ChunkResult(
                job_id=job_id,
                lock_acquired=False,
                status=current.status if current is not None else job.status,
            )
        if force_lock:
            logger.warning("chunk_lock_forced job_id=%s", job_id)

        if leased.cancel_requested or leased.status == JobStatus.CANCELLING:
            return self._commit(
                leased,
                token,
                items=[],
                tally=_ChunkTally(leased),
                stop_reason=STOP_CANCELLED,
                breaker_count=leased.consecutive_errors,
                pacer=None,
                started_at=self._clock(),
            )

        started_at = self._clock()
        try:
            items = self.provider.fetch(
                scope=leased.scope,
                scope_filter=leased.scope_filter,
                offset=leased.cursor,
                limit=leased.chunk_size,
                exclude_processed_before=None if leased.options.force_reprocess else leased.created_at,
            )
        except Exception as exc:
            return self._release_after_provider_error(leased, token, exc)

        return self._process_items(leased, token, items, started_at)

    def _release_after_provider_error(self, job: Job, token: str, exc: Exception) -> ChunkResult:
        message = f"provider error: {exc}"
        logger.warning("chunk_provider_failed job_id=%s cursor=%s error=%s", job.job_id, job.cursor, exc)
        released = self.repository.update(
            job_id=job.job_id,
            changes={"lock_token": None, "last_activity_at": self._clock(), "error_message": message},
            lease_token=token,
        )
        if released is None:
            return ChunkResult(job_id=job.job_id, lock_acquired=False, status=job.status, error_message=message)
        return ChunkResult(job_id=job.job_id, lock_acquired=True, status=released.status, error_message=message)

    def _process_items(self, job: Job, token: str, items: list[WorkItem], started_at: datetime) -> ChunkResult:
        settings = self.settings
        breaker = ConsecutiveErrorBreaker(threshold=settings.max_consecutive_errors, initial=job.consecutive_errors)
        previous_delay = (job.last_chunk_stats or {}).get("item_delay_ms")
        pacer = ItemPacer(
            base_ms=settings.item_delay_ms,
            max_ms=settings.item_delay_max_ms,
            backoff=settings.item_delay_backoff,
            cooldown=settings.item_delay_cooldown,
            current_ms=previous_delay,
        )
        tally = _ChunkTally(job)
        stop_reason: str | None = None
        last_renewal = started_at

        for index, item in enumerate(items):
            if index > 0:
                if pacer.current_ms > 0:
                    self._sleep(pacer.delay_s)
                stop_reason = self._checkpoint(job.job_id, token)
                if stop_reason is not None:
                    break
                last_renewal, renewed = self._maybe_renew_lease(job.job_id, token, last_renewal)
                if not renewed:
                    stop_reason = STOP_LEASE_LOST
                    break

            outcome = self._process_one(item, job.options)
            tally.add(outcome)
            if outcome.success:
                pacer.on_success()
            else:
                pacer.on_failure()
                logger.warning(
                    "item_failed job_id=%s item_id=%s error=%s", job.job_id, item.item_id, outcome.error
                )
            if breaker.record(outcome.success):
                logger.warning(
                    "chunk_circuit_open job_id=%s consecutive_errors=%s", job.job_id, breaker.count
                )
                stop_reason = STOP_CIRCUIT_OPEN
                break

        if stop_reason is None:
            stop_reason = self._checkpoint(job.job_id, token)
        return self._commit(
            job,
            token,
            items=items,
            tally=tally,
            stop_reason=stop_reason,
            breaker_count=breaker.count,
            pacer=pacer,
            started_at=started_at,
        )

    def _process_one(self, item: WorkItem, options: PipelineOptions) -> ItemOutcome:
        try:
            return self.processor.process(item, options)
        except Exception as exc:
            logger.exception("item_processor_raised item_id=%s", item.item_id)
            return ItemOutcome.failure(str(exc) or type(exc).__name__)

    def _checkpoint(self, job_id: str, token: str) -> str | None:
        current = self.repository.get(job_id)
        if current is None or current.lock_token != token:
            return STOP_LEASE_LOST
        if current.cancel_requested or current.status == JobStatus.CANCELLING:
            return STOP_CANCELLED
        if current.status == JobStatus.PAUSED:
            return STOP_PAUSED
        return None

    def _maybe_renew_lease(self, job_id: str, token: str, last_renewal: datetime) -> tuple[datetime, bool]:
        now = self._clock()
        if (now - last_renewal).total_seconds() < self.settings.lock_timeout_s / 3:
            return last_renewal, True
        renewed = self.repository.update(job_id=job_id, changes={"last_activity_at": now}, lease_token=token)
        return now, renewed is not None

    def _commit(
        self,
        job: Job,
        token: str,
        *,
        items: list[WorkItem],
        tally: _ChunkTally,
        stop_reason: str | None,
        breaker_count: int,
        pacer: ItemPacer | None,
        started_at: datetime,
    ) -> ChunkResult:
        if stop_reason == STOP_LEASE_LOST:
            logger.warning("chunk_lease_lost job_id=%s attempted=%s", job.job_id, tally.attempted)
            current = self.repository.get(job.job_id)
            return ChunkResult(
                job_id=job.job_id,
                lock_acquired=False,
                status=current.status if current is not None else job.status,
                error_message="lease lost before commit",
            )

        now = self._clock()
        new_cursor = job.cursor + tally.attempted
        read_was_short = len(items) < job.chunk_size
        is_complete = stop_reason is None and read_was_short
        succeeded_total = job.succeeded_count + tally.succeeded
        scored_total = sum(tally.histogram.values())
        quality_points = job.total_quality_points + tally.quality_points
        duration_ms = max(0, int((now - started_at).total_seconds() * 1000))

        changes: dict[str, Any] = {
            "cursor": new_cursor,
            "total_items": new_cursor if is_complete else max(job.total_items, new_cursor),
            "processed_count": job.processed_count + tally.attempted,
            "succeeded_count": succeeded_total,
            "failed_count": job.failed_count + tally.failed,
            "enriched_count": job.enriched_count + tally.enriched,
            "annotated_count": job.annotated_count + tally.annotated,
            "total_quality_points": quality_points,
            "avg_quality_score": round(quality_points / scored_total) if scored_total else None,
            "quality_histogram": tally.histogram,
            "chunks_processed": job.chunks_processed + 1,
            "consecutive_errors": breaker_count,
            "lock_token": None,
            "last_activity_at": now,
            "last_chunk_stats": {
                "attempted": tally.attempted,
                "succeeded": tally.succeeded,
                "failed": tally.failed,
                "duration_ms": duration_ms,
                "avg_item_ms": round(duration_ms / tally.attempted) if tally.attempted else 0,
                "items_per_minute": (
                    round(tally.attempted * 60000 / duration_ms, 1) if duration_ms and tally.attempted else 0.0
                ),
                "item_delay_ms": round(pacer.current_ms) if pacer is not None else None,
                "stop_reason": stop_reason or ("completed" if is_complete else "chunk_done"),
            },
        }
        expected_statuses: set[JobStatus] | None = None
        if stop_reason == STOP_CANCELLED:
            changes.update({"status": JobStatus.CANCELLED, "completed_at": now})
        elif stop_reason == STOP_CIRCUIT_OPEN:
            changes.update(
                {
                    "status": JobStatus.PAUSED,
                    "error_message": f"auto-paused after {breaker_count} consecutive item failures",
                }
            )
            expected_statuses = {JobStatus.RUNNING}
        elif stop_reason is None:
            changes["error_message"] = None
            if is_complete:
                changes.update({"status": JobStatus.COMPLETED, "completed_at": now})
            expected_statuses = {JobStatus.RUNNING}

        committed = self.repository.update(
            job_id=job.job_id,
            changes=changes,
            expected_statuses=expected_statuses,
            lease_token=token,
        )
        if committed is None and expected_statuses is not None:
            # Status moved under us (pause or cancel landed after the last checkpoint).
            late_stop = self._checkpoint(job.job_id, token)
            if late_stop in {STOP_CANCELLED, STOP_PAUSED}:
                for name in ("status", "completed_at", "error_message"):
                    changes.pop(name, None)
                changes["total_items"] = max(job.total_items, new_cursor)
                if late_stop == STOP_CANCELLED:
                    changes.update({"status": JobStatus.CANCELLED, "completed_at": now})
                committed = self.repository.update(job_id=job.job_id, changes=changes, lease_token=token)
        if committed is None:
            logger.warning("chunk_commit_rejected job_id=%s attempted=%s", job.job_id, tally.attempted)
            current = self.repository.get(job.job_id)
            return ChunkResult(
                job_id=job.job_id,
                lock_acquired=False,
                status=current.status if current is not None else job.status,
                error_message="lease lost before commit",
            )

        logger.info(
            "chunk_committed job_id=%s cursor=%s total=%s attempted=%s failed=%s status=%s",
            committed.job_id,
            committed.cursor,
            committed.total_items,
            tally.attempted,
            tally.failed,
            committed.status.value,
        )
        return ChunkResult(
            job_id=committed.job_id,
            lock_acquired=True,
            status=committed.status,
            items_processed=tally.attempted,
            succeeded=tally.succeeded,
            failed=tally.failed,
            is_job_complete=committed.status == JobStatus.COMPLETED,
            was_cancelled=committed.status == JobStatus.CANCELLED,
            was_paused=committed.status == JobStatus.PAUSED,
            error_message=committed.error_message,
        )
