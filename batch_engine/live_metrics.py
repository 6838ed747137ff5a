from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from batch_engine.catalog import ItemActivitySource
from batch_engine.errors import job_not_found
from batch_engine.models import LiveMetricsSnapshot, utcnow

RATE_WINDOW_MINUTES = 5


def format_eta(minutes: int | None) -> str | None:
    if minutes is None:
        return None
    if minutes < 60:
        return f"~{minutes} min"
    if minutes < 24 * 60:
        return f"~{minutes // 60}h {minutes % 60}min"
    return f"~{minutes // (24 * 60)}d {(minutes % (24 * 60)) // 60}h"


class LiveMetricsAggregator:
    """Derives throughput and ETA from recent item activity; never writes anything."""

    def __init__(
        self,
        *,
        repository: Any,
        activity_source: ItemActivitySource,
        alive_threshold_s: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.activity_source = activity_source
        self.alive_threshold_s = alive_threshold_s
        self._clock = clock

    def snapshot(self, job_id: str) -> LiveMetricsSnapshot:
        job = self.repository.get(job_id)
        if job is None:
            raise job_not_found(job_id)
        now = self._clock()
        stamps = self.activity_source.recent_activity(
            scope=job.scope,
            scope_filter=job.scope_filter,
            since=now - timedelta(minutes=RATE_WINDOW_MINUTES),
        )
        one_minute_ago = now - timedelta(minutes=1)
        items_last_minute = sum(1 for ts in stamps if ts >= one_minute_ago)
        items_last_5 = len(stamps)
        rate = round(items_last_5 / RATE_WINDOW_MINUTES, 1)
        remaining = max(0, job.total_items - job.processed_count)
        eta = math.ceil(remaining / rate) if rate > 0 else None
        last_item_at = max(stamps) if stamps else None
        is_alive = last_item_at is not None and (now - last_item_at).total_seconds() < self.alive_threshold_s
        return LiveMetricsSnapshot(
            job_id=job_id,
            items_last_minute=items_last_minute,
            items_last_5_minutes=items_last_5,
            rate_per_minute=rate,
            remaining_items=remaining,
            eta_minutes=eta,
            eta_display=format_eta(eta),
            last_item_at=last_item_at,
            is_alive=is_alive,
            computed_at=now,
        )
