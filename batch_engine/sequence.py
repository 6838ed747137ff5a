"""Ordered walk over partitions, one partition job at a time.

Nothing about the sequence is stored: the current position, completed
partitions and totals are rebuilt from partition-scoped job records on every
call, after the orphan reaper has run.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from batch_engine.catalog import ItemActivitySource
from batch_engine.errors import ApiError
from batch_engine.lifecycle import JobLifecycleController
from batch_engine.models import TERMINAL_STATUSES, Job, JobScope, JobStatus, PipelineOptions
from batch_engine.reaper import OrphanReaper

CURRENT_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED})

StartPartitionJob = Callable[[str, PipelineOptions], Job]


@dataclass
class PartitionState:
    partition_id: str
    position: int
    is_completed: bool
    is_active: bool
    pending_items: int | None
    last_job: Job | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "position": self.position,
            "is_completed": self.is_completed,
            "is_active": self.is_active,
            "pending_items": self.pending_items,
            "last_job": self.last_job.as_dict() if self.last_job is not None else None,
        }


@dataclass
class JobSequenceState:
    partitions: list[PartitionState] = field(default_factory=list)
    current_job: Job | None = None
    orphans_cleaned: int = 0

    @property
    def current_partition(self) -> str | None:
        return self.current_job.scope_filter if self.current_job is not None else None

    @property
    def completed_partitions(self) -> list[str]:
        return [p.partition_id for p in self.partitions if p.is_completed]

    def as_dict(self) -> dict[str, Any]:
        jobs = [p.last_job for p in self.partitions if p.last_job is not None]
        return {
            "current_partition": self.current_partition,
            "current_job": self.current_job.as_dict() if self.current_job is not None else None,
            "completed_partitions": self.completed_partitions,
            "partitions": [p.as_dict() for p in self.partitions],
            "total_processed": sum(j.processed_count for j in jobs),
            "total_failed": sum(j.failed_count for j in jobs),
            "is_finished": bool(self.partitions) and len(self.completed_partitions) == len(self.partitions),
            "orphans_cleaned": self.orphans_cleaned,
        }


class SequenceOrchestrator:
    def __init__(
        self,
        *,
        partitions: list[str],
        repository: Any,
        lifecycle: JobLifecycleController,
        reaper: OrphanReaper,
        start_job: StartPartitionJob,
        activity_source: ItemActivitySource | None = None,
    ) -> None:
        self.partitions = list(dict.fromkeys(partitions))
        self.repository = repository
        self.lifecycle = lifecycle
        self.reaper = reaper
        self._start_job = start_job
        self.activity_source = activity_source

    def _derive(self) -> JobSequenceState:
        reaped = self.reaper.reap()
        members = set(self.partitions)
        jobs = [j for j in self.repository.list(scope=JobScope.PARTITION) if j.scope_filter in members]
        by_partition: dict[str, list[Job]] = {p: [] for p in self.partitions}
        for job in jobs:
            by_partition[str(job.scope_filter)].append(job)

        current = None
        candidates = [j for j in jobs if j.status in CURRENT_STATUSES]
        if candidates:
            current = max(candidates, key=lambda j: (j.created_at, j.job_id))

        states = []
        for position, partition_id in enumerate(self.partitions):
            history = by_partition[partition_id]
            pending = None
            if self.activity_source is not None:
                pending = self.activity_source.pending_count(partition_id=partition_id)
            states.append(
                PartitionState(
                    partition_id=partition_id,
                    position=position,
                    is_completed=any(j.status == JobStatus.COMPLETED for j in history),
                    is_active=current is not None and current.scope_filter == partition_id,
                    pending_items=pending,
                    last_job=history[-1] if history else None,
                )
            )
        return JobSequenceState(partitions=states, current_job=current, orphans_cleaned=len(reaped))

    def status(self) -> JobSequenceState:
        return self._derive()

    def start(self, partition_id: str | None = None, options: PipelineOptions | None = None) -> dict[str, Any]:
        state = self._derive()
        if state.current_job is not None:
            raise ApiError(
                code="SEQUENCE_ALREADY_RUNNING",
                message=f"partition {state.current_partition} already has an active job",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        if partition_id is not None:
            if partition_id not in self.partitions:
                raise ApiError(
                    code="SEQUENCE_PARTITION_UNKNOWN",
                    message=f"partition not in sequence: {partition_id}",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                )
            target = partition_id
        else:
            target = self._next_open(state, after=-1)
            if target is None:
                raise ApiError(
                    code="SEQUENCE_EXHAUSTED",
                    message="all partitions in the sequence are completed",
                    error_class="business_rule",
                    retryable=False,
                    http_status=400,
                )
        job = self._start_job(target, options or PipelineOptions())
        return {
            "partition_id": target,
            "position": self.partitions.index(target),
            "job": job.as_dict(),
            "orphans_cleaned": state.orphans_cleaned,
        }

    def skip(self, options: PipelineOptions | None = None) -> dict[str, Any]:
        state = self._derive()
        current = state.current_job
        if current is None:
            raise ApiError(
                code="SEQUENCE_NOTHING_TO_SKIP",
                message="no active partition job to skip",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
        cancelled = self.lifecycle.cancel(current.job_id)
        position = self.partitions.index(str(current.scope_filter))
        target = self._next_open(state, after=position)
        result: dict[str, Any] = {
            "skipped_partition": current.scope_filter,
            "skipped_job": cancelled.as_dict(),
            "partition_id": target,
            "job": None,
            "is_finished": target is None,
        }
        if target is not None:
            result["job"] = self._start_job(target, options or PipelineOptions()).as_dict()
        return result

    def stop(self) -> dict[str, Any]:
        self.reaper.reap()
        members = set(self.partitions)
        stopped = []
        for job in self.repository.list(scope=JobScope.PARTITION):
            if job.scope_filter not in members or job.status in TERMINAL_STATUSES:
                continue
            stopped.append(self.lifecycle.cancel(job.job_id))
        return {"stopped": len(stopped), "jobs": [j.as_dict() for j in stopped]}

    def _next_open(self, state: JobSequenceState, *, after: int) -> str | None:
        for partition in state.partitions[after + 1 :]:
            if not partition.is_completed:
                return partition.partition_id
        return None
