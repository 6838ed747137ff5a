"""Work item catalog.

Items are addressed by a stable ordering (created_at, item_id) so a job can
resume from an integer offset. A job that is not force-reprocessing skips
items that already succeeded before the job was created; items whose last
attempt failed stay eligible. Items touched while the job runs keep their
position so later offsets stay valid.
"""
from __future__ import annotations

import copy
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from batch_engine.models import JobScope, utcnow


@dataclass
class WorkItem:
    item_id: str
    partition_id: str
    entity_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    payload: dict[str, Any] = field(default_factory=dict)
    last_processed_at: datetime | None = None
    last_succeeded: bool | None = None


class WorkItemProvider(Protocol):
    """Ordered, offset-addressable view over the items a job covers."""

    def fetch(
        self,
        *,
        scope: JobScope,
        scope_filter: str | None,
        offset: int,
        limit: int,
        exclude_processed_before: datetime | None = None,
    ) -> list[WorkItem]: ...

    def count(
        self,
        *,
        scope: JobScope,
        scope_filter: str | None,
        exclude_processed_before: datetime | None = None,
    ) -> int: ...


class ItemActivitySource(Protocol):
    """Per-item processing timestamps, read by live metrics and the sequence view."""

    def recent_activity(self, *, scope: JobScope, scope_filter: str | None, since: datetime) -> list[datetime]: ...

    def pending_count(self, *, partition_id: str) -> int: ...


class InMemoryItemCatalog:
    def __init__(self, items: Iterable[WorkItem] | None = None) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {}
        if items is not None:
            self.add_items(items)

    def add_item(
        self,
        *,
        item_id: str,
        partition_id: str,
        entity_id: str | None = None,
        created_at: datetime | None = None,
        payload: dict[str, Any] | None = None,
    ) -> WorkItem:
        item = WorkItem(
            item_id=item_id,
            partition_id=partition_id,
            entity_id=entity_id,
            created_at=created_at or utcnow(),
            payload=dict(payload or {}),
        )
        with self._lock:
            self._items[item_id] = item
        return copy.deepcopy(item)

    def add_items(self, items: Iterable[WorkItem]) -> None:
        with self._lock:
            for item in items:
                self._items[item.item_id] = copy.deepcopy(item)

    def remove_item(self, item_id: str) -> None:
        with self._lock:
            self._items.pop(item_id, None)

    def get(self, item_id: str) -> WorkItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return copy.deepcopy(item) if item is not None else None

    @staticmethod
    def _in_scope(item: WorkItem, *, scope: JobScope, scope_filter: str | None) -> bool:
        if scope == JobScope.GLOBAL:
            return True
        if scope == JobScope.PARTITION:
            return item.partition_id == scope_filter
        return item.entity_id == scope_filter

    def _ordered(
        self,
        *,
        scope: JobScope,
        scope_filter: str | None,
        exclude_processed_before: datetime | None,
    ) -> list[WorkItem]:
        selected = []
        for item in self._items.values():
            if not self._in_scope(item, scope=scope, scope_filter=scope_filter):
                continue
            if (
                exclude_processed_before is not None
                and item.last_succeeded
                and item.last_processed_at is not None
                and item.last_processed_at < exclude_processed_before
            ):
                continue
            selected.append(item)
        return sorted(selected, key=lambda x: (x.created_at, x.item_id))

    def fetch(
        self,
        *,
        scope: JobScope,
        scope_filter: str | None,
        offset: int,
        limit: int,
        exclude_processed_before: datetime | None = None,
    ) -> list[WorkItem]:
        start = max(0, int(offset))
        with self._lock:
            ordered = self._ordered(
                scope=scope,
                scope_filter=scope_filter,
                exclude_processed_before=exclude_processed_before,
            )
            return [copy.deepcopy(x) for x in ordered[start : start + max(0, int(limit))]]

    def count(
        self,
        *,
        scope: JobScope,
        scope_filter: str | None,
        exclude_processed_before: datetime | None = None,
    ) -> int:
        with self._lock:
            return len(
                self._ordered(
                    scope=scope,
                    scope_filter=scope_filter,
                    exclude_processed_before=exclude_processed_before,
                )
            )

    def mark_processed(self, item_id: str, *, success: bool, at: datetime | None = None) -> None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return
            item.last_processed_at = at or utcnow()
            item.last_succeeded = bool(success)

    def recent_activity(self, *, scope: JobScope, scope_filter: str | None, since: datetime) -> list[datetime]:
        with self._lock:
            stamps = [
                item.last_processed_at
                for item in self._items.values()
                if item.last_processed_at is not None
                and item.last_processed_at >= since
                and self._in_scope(item, scope=scope, scope_filter=scope_filter)
            ]
        return sorted(stamps, reverse=True)

    def pending_count(self, *, partition_id: str) -> int:
        with self._lock:
            return sum(
                1
                for item in self._items.values()
                if item.partition_id == partition_id and not item.last_succeeded
            )

    def reset(self) -> None:
        with self._lock:
            self._items.clear()
