from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from batch_engine.catalog import ItemActivitySource, WorkItemProvider
from batch_engine.chunk_runner import ChunkRunner
from batch_engine.config import MAX_CHUNK_SIZE, MIN_CHUNK_SIZE, EngineSettings, true_stack_required
from batch_engine.continuation import ContinuationTrigger, QueueScheduler, Scheduler, ThreadTimerScheduler
from batch_engine.errors import ApiError, job_not_found
from batch_engine.lifecycle import JobLifecycleController
from batch_engine.live_metrics import LiveMetricsAggregator
from batch_engine.models import (
    ACTIVE_STATUSES,
    ChunkResult,
    Job,
    JobScope,
    JobStatus,
    LiveMetricsSnapshot,
    PipelineOptions,
    utcnow,
)
from batch_engine.processors import ItemProcessor
from batch_engine.queue_backend import InMemoryQueueBackend, create_queue_from_env
from batch_engine.reaper import OrphanReaper
from batch_engine.repositories.jobs import create_jobs_repository_from_env
from batch_engine.sequence import JobSequenceState, SequenceOrchestrator

logger = logging.getLogger(__name__)


def _options_invalid(message: str) -> ApiError:
    return ApiError(
        code="JOB_OPTIONS_INVALID",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


class BatchJobService:
    """Entry point for every job operation; wires the runner, lifecycle, metrics and sequence."""

    def __init__(
        self,
        *,
        repository: Any,
        provider: WorkItemProvider,
        processor: ItemProcessor,
        activity_source: ItemActivitySource | None = None,
        scheduler: Scheduler | None = None,
        settings: EngineSettings | None = None,
        partitions: list[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.repository = repository
        self.provider = provider
        self._clock = clock
        if activity_source is None and hasattr(provider, "recent_activity"):
            activity_source = provider  # type: ignore[assignment]
        self.activity_source = activity_source
        self.scheduler = scheduler or ThreadTimerScheduler(self._run_scheduled)
        self.trigger = ContinuationTrigger(scheduler=self.scheduler, delay_s=self.settings.continuation_delay_s)
        self.runner = ChunkRunner(
            repository=repository,
            provider=provider,
            processor=processor,
            settings=self.settings,
            clock=clock,
            sleep=sleep,
        )
        self.lifecycle = JobLifecycleController(repository=repository, trigger=self.trigger, clock=clock)
        self.reaper = OrphanReaper(repository=repository, threshold_s=self.settings.orphan_threshold_s, clock=clock)
        self.metrics = (
            LiveMetricsAggregator(
                repository=repository,
                activity_source=activity_source,
                alive_threshold_s=self.settings.alive_threshold_s,
                clock=clock,
            )
            if activity_source is not None
            else None
        )
        self.sequence = SequenceOrchestrator(
            partitions=partitions if partitions is not None else self.settings.sequence_partitions,
            repository=repository,
            lifecycle=self.lifecycle,
            reaper=self.reaper,
            start_job=self._start_partition_job,
            activity_source=activity_source,
        )

    # ------------------------------------------------------------------
    # Job operations
    # ------------------------------------------------------------------

    def create_and_start(
        self,
        *,
        scope: JobScope | str,
        scope_filter: str | None = None,
        options: PipelineOptions | None = None,
        chunk_size: int | None = None,
    ) -> Job:
        try:
            scope = JobScope(scope)
        except ValueError as exc:
            raise _options_invalid(f"unknown scope: {scope}") from exc
        scope_filter = (scope_filter or "").strip() or None
        if scope == JobScope.GLOBAL and scope_filter is not None:
            raise _options_invalid("global scope does not take a scope_filter")
        if scope != JobScope.GLOBAL and scope_filter is None:
            raise _options_invalid(f"{scope.value} scope requires a scope_filter")
        size = self.settings.chunk_size if chunk_size is None else int(chunk_size)
        if not MIN_CHUNK_SIZE <= size <= MAX_CHUNK_SIZE:
            raise _options_invalid(f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}")
        options = options or PipelineOptions()

        active = self.repository.list(statuses=ACTIVE_STATUSES)
        duplicate = next((j for j in active if j.scope == scope and j.scope_filter == scope_filter), None)
        if duplicate is not None:
            raise ApiError(
                code="JOB_SCOPE_CONFLICT",
                message=f"job {duplicate.job_id} is already {duplicate.status.value} for this scope",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        if self.settings.max_active_jobs and len(active) >= self.settings.max_active_jobs:
            raise ApiError(
                code="JOB_CAPACITY_EXHAUSTED",
                message=f"{len(active)} jobs already active (limit {self.settings.max_active_jobs})",
                error_class="transient",
                retryable=True,
                http_status=429,
            )

        now = self._clock()
        total = self.provider.count(
            scope=scope,
            scope_filter=scope_filter,
            exclude_processed_before=None if options.force_reprocess else now,
        )
        job = self.repository.create(
            job=Job(
                job_id=f"job_{uuid.uuid4().hex[:12]}",
                scope=scope,
                scope_filter=scope_filter,
                chunk_size=size,
                options=options,
                total_items=total,
                created_at=now,
            )
        )
        logger.info(
            "job_created job_id=%s scope=%s scope_filter=%s total_items=%s chunk_size=%s",
            job.job_id,
            scope.value,
            scope_filter,
            total,
            size,
        )
        self.trigger.schedule(job.job_id, delay_s=0)
        return job

    def continue_job(self, job_id: str, *, force_lock: bool = False) -> ChunkResult:
        result = self.runner.run_chunk(job_id, force_lock=force_lock)
        self.trigger.maybe_schedule(result)
        return result

    def pause(self, job_id: str) -> Job:
        return self.lifecycle.pause(job_id)

    def resume(self, job_id: str) -> Job:
        return self.lifecycle.resume(job_id)

    def cancel(self, job_id: str) -> Job:
        return self.lifecycle.cancel(job_id)

    def get_status(self, job_id: str) -> Job:
        job = self.repository.get(job_id)
        if job is None:
            raise job_not_found(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: str | None = None,
        scope: str | None = None,
        cursor: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        try:
            statuses = [JobStatus(status)] if status else None
            scope_value = JobScope(scope) if scope else None
        except ValueError as exc:
            raise _options_invalid(str(exc)) from exc
        jobs = self.repository.list(statuses=statuses, scope=scope_value)

        start = 0
        if cursor:
            try:
                start = max(0, int(cursor))
            except ValueError:
                start = 0
        limit = min(max(limit, 1), 100)

        sliced = jobs[start : start + limit]
        next_cursor = None
        if start + limit < len(jobs):
            next_cursor = str(start + limit)
        return {
            "items": sliced,
            "total": len(jobs),
            "next_cursor": next_cursor,
        }

    def get_live_metrics(self, job_id: str) -> LiveMetricsSnapshot:
        if self.metrics is None:
            raise ApiError(
                code="METRICS_UNAVAILABLE",
                message="no item activity source configured",
                error_class="dependency",
                retryable=False,
                http_status=503,
            )
        return self.metrics.snapshot(job_id)

    def cleanup(self) -> dict[str, Any]:
        reaped = self.reaper.reap()
        return {"reaped": len(reaped), "jobs": [j.as_dict() for j in reaped]}

    # ------------------------------------------------------------------
    # Sequence operations
    # ------------------------------------------------------------------

    def seq_status(self) -> JobSequenceState:
        return self.sequence.status()

    def seq_start(self, *, partition_id: str | None = None, options: PipelineOptions | None = None) -> dict[str, Any]:
        return self.sequence.start(partition_id=partition_id, options=options)

    def seq_skip(self, *, options: PipelineOptions | None = None) -> dict[str, Any]:
        return self.sequence.skip(options=options)

    def seq_stop(self) -> dict[str, Any]:
        return self.sequence.stop()

    def _start_partition_job(self, partition_id: str, options: PipelineOptions) -> Job:
        return self.create_and_start(scope=JobScope.PARTITION, scope_filter=partition_id, options=options)

    def _run_scheduled(self, job_id: str) -> None:
        try:
            self.continue_job(job_id)
        except ApiError as exc:
            logger.warning("continuation_dropped job_id=%s code=%s", job_id, exc.code)


def create_service_from_env(
    *,
    provider: WorkItemProvider,
    processor: ItemProcessor,
    activity_source: ItemActivitySource | None = None,
    queue_backend: Any | None = None,
    environ: Mapping[str, str] | None = None,
) -> BatchJobService:
    env = os.environ if environ is None else environ
    settings = EngineSettings.from_env(env)
    repository = create_jobs_repository_from_env(settings)
    scheduler: Scheduler | None = None
    if settings.scheduler_backend == "queue":
        if queue_backend is None:
            try:
                queue_backend = create_queue_from_env(env)
            except RuntimeError:
                if true_stack_required(env):
                    raise
                logger.warning("queue_backend_fallback backend=memory")
                queue_backend = InMemoryQueueBackend()
        scheduler = QueueScheduler(queue_backend=queue_backend, queue_name=settings.continuation_queue)
    elif settings.scheduler_backend != "thread":
        raise RuntimeError(f"unsupported scheduler backend: {settings.scheduler_backend}")
    return BatchJobService(
        repository=repository,
        provider=provider,
        processor=processor,
        activity_source=activity_source,
        scheduler=scheduler,
        settings=settings,
    )
