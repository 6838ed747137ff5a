from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from batch_engine.continuation import ContinuationTrigger
from batch_engine.errors import ApiError, invalid_transition, job_not_found
from batch_engine.models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.RUNNING: {
        JobStatus.PAUSED,
        JobStatus.CANCELLING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    },
    JobStatus.PAUSED: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.CANCELLING: {JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.CANCELLED: set(),
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

_MAX_TRANSITION_ATTEMPTS = 3


def can_transition(current: JobStatus, new_status: JobStatus) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current, set())


class JobLifecycleController:
    """Operator-driven status changes: pause, resume and cancel."""

    def __init__(
        self,
        *,
        repository: Any,
        trigger: ContinuationTrigger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.trigger = trigger
        self._clock = clock

    def _get(self, job_id: str) -> Job:
        job = self.repository.get(job_id)
        if job is None:
            raise job_not_found(job_id)
        return job

    def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        *,
        changes: Mapping[str, Any] | None = None,
    ) -> Job:
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            job = self._get(job_id)
            if job.status == new_status:
                return job
            if not can_transition(job.status, new_status):
                raise invalid_transition(job.status.value, new_status.value)
            updated = self.repository.update(
                job_id=job_id,
                changes={**dict(changes or {}), "status": new_status},
                expected_statuses={job.status},
            )
            if updated is not None:
                logger.info(
                    "job_transition job_id=%s from=%s to=%s", job_id, job.status.value, new_status.value
                )
                return updated
        raise ApiError(
            code="JOB_STATE_CONFLICT",
            message=f"job status kept changing during transition to {new_status.value}",
            error_class="transient",
            retryable=True,
            http_status=409,
        )

    def pause(self, job_id: str) -> Job:
        job = self._get(job_id)
        if job.status == JobStatus.PAUSED:
            return job
        if job.status != JobStatus.RUNNING:
            raise invalid_transition(job.status.value, JobStatus.PAUSED.value)
        return self.transition(job_id, JobStatus.PAUSED)

    def resume(self, job_id: str) -> Job:
        job = self._get(job_id)
        if job.status == JobStatus.RUNNING:
            return job
        if job.status != JobStatus.PAUSED:
            raise invalid_transition(job.status.value, JobStatus.RUNNING.value)
        # The paused holder, if any, loses its lease; its uncommitted items are replayed.
        resumed = self.transition(
            job_id,
            JobStatus.RUNNING,
            changes={
                "error_message": None,
                "consecutive_errors": 0,
                "lock_token": None,
                "last_activity_at": self._clock(),
            },
        )
        if self.trigger is not None:
            self.trigger.schedule(job_id, delay_s=0)
        return resumed

    def cancel(self, job_id: str) -> Job:
        # Target follows each fresh read; a job leased since the last read gets a cooperative stop.
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            job = self._get(job_id)
            if job.is_terminal:
                raise ApiError(
                    code="JOB_CANCEL_CONFLICT",
                    message=f"job already {job.status.value}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            if job.status == JobStatus.CANCELLING:
                return job
            if job.status == JobStatus.RUNNING:
                target = JobStatus.CANCELLING
                changes: dict[str, Any] = {"cancel_requested": True}
            else:
                now = self._clock()
                target = JobStatus.CANCELLED
                changes = {"cancel_requested": True, "completed_at": now, "lock_token": None, "last_activity_at": now}
            updated = self.repository.update(
                job_id=job_id,
                changes={**changes, "status": target},
                expected_statuses={job.status},
            )
            if updated is not None:
                logger.info("job_transition job_id=%s from=%s to=%s", job_id, job.status.value, target.value)
                return updated
        raise ApiError(
            code="JOB_STATE_CONFLICT",
            message="job status kept changing during cancel",
            error_class="transient",
            retryable=True,
            http_status=409,
        )
