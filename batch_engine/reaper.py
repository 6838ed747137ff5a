from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from batch_engine.models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)

ORPHANED_MESSAGE = "orphaned: no progress within threshold"


class OrphanReaper:
    """Fails running jobs whose continuation chain has stopped making progress."""

    def __init__(
        self,
        *,
        repository: Any,
        threshold_s: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.threshold_s = threshold_s
        self._clock = clock

    def reap(self, now: datetime | None = None) -> list[Job]:
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.threshold_s)
        reaped: list[Job] = []
        for job in self.repository.find_stale(statuses=[JobStatus.RUNNING], older_than=cutoff):
            updated = self.repository.update(
                job_id=job.job_id,
                changes={
                    "status": JobStatus.FAILED,
                    "error_message": ORPHANED_MESSAGE,
                    "completed_at": now,
                    "lock_token": None,
                },
                expected_statuses={JobStatus.RUNNING},
                lease_token=job.lock_token,
                stale_before=cutoff,
            )
            if updated is None:
                # Resumed activity or a status change won the race.
                continue
            logger.warning(
                "job_orphan_reaped job_id=%s last_activity_at=%s cursor=%s",
                job.job_id,
                job.last_activity_at.isoformat() if job.last_activity_at else None,
                job.cursor,
            )
            reaped.append(updated)
        return reaped
