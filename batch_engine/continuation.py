from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from batch_engine.models import ChunkResult

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    """Runs ``Continue(job_id)`` once, no sooner than ``delay_seconds`` from now."""

    def after(self, delay_seconds: float, job_id: str) -> None: ...


class ThreadTimerScheduler:
    """In-process scheduler; pending timers die with the process and the reaper picks up the job."""

    def __init__(self, run: Callable[[str], Any]) -> None:
        self._run = run
        self._lock = threading.Lock()
        self._timers: dict[int, threading.Timer] = {}

    def after(self, delay_seconds: float, job_id: str) -> None:
        timer = threading.Timer(max(0.0, float(delay_seconds)), self._fire, args=(job_id,))
        timer.daemon = True
        with self._lock:
            self._timers[id(timer)] = timer
        timer.start()

    def _fire(self, job_id: str) -> None:
        current = threading.current_thread()
        with self._lock:
            self._timers.pop(id(current), None)
        try:
            self._run(job_id)
        except Exception:
            # Timer threads have no caller to report to.
            logger.exception("continuation_run_failed job_id=%s", job_id)

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class QueueScheduler:
    """Hands continuations to a delay-aware queue drained by the worker runtime."""

    def __init__(self, *, queue_backend: Any, queue_name: str = "continuations") -> None:
        self._queue_backend = queue_backend
        self._queue_name = queue_name

    def after(self, delay_seconds: float, job_id: str) -> None:
        due_at = datetime.now(UTC) + timedelta(seconds=max(0.0, float(delay_seconds)))
        self._queue_backend.enqueue(
            queue_name=self._queue_name,
            payload={"job_id": job_id},
            available_at=due_at,
        )


class ContinuationTrigger:
    def __init__(self, *, scheduler: Scheduler, delay_s: float = 3.0) -> None:
        self._scheduler = scheduler
        self._delay_s = max(0.0, float(delay_s))

    def schedule(self, job_id: str, *, delay_s: float | None = None) -> bool:
        delay = self._delay_s if delay_s is None else max(0.0, float(delay_s))
        try:
            self._scheduler.after(delay, job_id)
        except Exception as exc:
            # A lost continuation leaves the job running without activity; the reaper fails it later.
            logger.warning("continuation_schedule_failed job_id=%s error=%s", job_id, exc)
            return False
        logger.debug("continuation_scheduled job_id=%s delay_s=%s", job_id, delay)
        return True

    def maybe_schedule(self, result: ChunkResult) -> bool:
        if not result.should_continue:
            return False
        result.continuation_scheduled = self.schedule(result.job_id)
        return result.continuation_scheduled
