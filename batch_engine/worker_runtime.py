from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from batch_engine.errors import ApiError

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    chunks_run: int = 0
    lock_skipped: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0
    orphans_reaped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "chunks_run": self.chunks_run,
            "lock_skipped": self.lock_skipped,
            "failed": self.failed,
            "acked": self.acked,
            "requeued": self.requeued,
            "orphans_reaped": self.orphans_reaped,
        }

    def merge(self, other: dict[str, int]) -> None:
        for name, value in other.items():
            setattr(self, name, getattr(self, name) + int(value))


class WorkerRuntime:
    """Resident worker that turns queued continuations into chunk runs."""

    def __init__(
        self,
        *,
        service: Any,
        queue_backend: Any,
        queue_name: str = "continuations",
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        reap_every_iterations: int = 50,
        retry_delay_ms: int = 1000,
        max_retry_attempts: int = 5,
    ) -> None:
        self.service = service
        self.queue_backend = queue_backend
        self.queue_name = queue_name
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.reap_every_iterations = max(0, int(reap_every_iterations))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self.max_retry_attempts = max(1, int(max_retry_attempts))

    def _process_message(self, *, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(queue_name=self.queue_name)
        if msg is None:
            return False
        stats.processed += 1
        job_id = str(msg.payload.get("job_id") or "")
        if not job_id:
            self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            return True

        try:
            result = self.service.continue_job(job_id)
        except ApiError as exc:
            logger.warning("worker_continuation_rejected job_id=%s code=%s", job_id, exc.code)
            stats.failed += 1
        except Exception:
            # Keep worker loop alive; unexpected failures are retried until the attempt cap.
            stats.failed += 1
            if msg.attempt + 1 < self.max_retry_attempts:
                logger.exception(
                    "worker_continuation_failed job_id=%s attempt=%s retry_in_ms=%s",
                    job_id,
                    msg.attempt,
                    self.retry_delay_ms,
                )
                self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=self.retry_delay_ms)
                stats.requeued += 1
                return True
            logger.exception("worker_continuation_dropped job_id=%s attempts=%s", job_id, msg.attempt + 1)
        else:
            if result.lock_acquired:
                stats.chunks_run += 1
            else:
                stats.lock_skipped += 1
        self.queue_backend.ack(message_id=msg.message_id)
        stats.acked += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            if not self._process_message(stats=stats):
                break
        return stats.as_dict()

    def reap(self) -> int:
        return int(self.service.cleanup()["reaped"])

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.merge(current)
            iterations += 1
            if self.reap_every_iterations and iterations % self.reap_every_iterations == 0:
                aggregate.orphans_reaped += self.reap()
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    service: Any,
    queue_backend: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        service=service,
        queue_backend=queue_backend,
        queue_name=str(env.get("WORKER_QUEUE_NAME", "continuations")).strip() or "continuations",
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        reap_every_iterations=_env_int(env, "WORKER_REAP_EVERY_ITERATIONS", default=50, minimum=0),
        retry_delay_ms=_env_int(env, "WORKER_RETRY_DELAY_MS", default=1000, minimum=0),
        max_retry_attempts=_env_int(env, "WORKER_MAX_RETRY_ATTEMPTS", default=5, minimum=1),
    )
