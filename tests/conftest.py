import pathlib
import sys
from datetime import UTC, datetime, timedelta

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from batch_engine.catalog import InMemoryItemCatalog, WorkItem
from batch_engine.config import EngineSettings
from batch_engine.processors import StagedItemProcessor
from batch_engine.repositories.jobs import InMemoryJobsRepository
from batch_engine.service import BatchJobService


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls: list[tuple[float, str]] = []

    def after(self, delay_seconds: float, job_id: str) -> None:
        self.calls.append((delay_seconds, job_id))

    def job_ids(self) -> list[str]:
        return [job_id for _, job_id in self.calls]


def seed_items(
    catalog: InMemoryItemCatalog,
    *,
    count: int,
    partition_id: str = "p1",
    prefix: str = "item",
    start: datetime | None = None,
) -> list[str]:
    base = start or datetime(2026, 1, 1, tzinfo=UTC)
    ids = []
    for idx in range(count):
        item_id = f"{prefix}_{partition_id}_{idx:04d}"
        catalog.add_items(
            [
                WorkItem(
                    item_id=item_id,
                    partition_id=partition_id,
                    entity_id=f"artist_{idx % 3}",
                    created_at=base + timedelta(seconds=idx),
                )
            ]
        )
        ids.append(item_id)
    return ids


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(chunk_size=10, item_delay_ms=0, item_delay_max_ms=0, max_active_jobs=5)


@pytest.fixture
def catalog() -> InMemoryItemCatalog:
    return InMemoryItemCatalog()


@pytest.fixture
def repository() -> InMemoryJobsRepository:
    return InMemoryJobsRepository()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def make_service(repository, catalog, scheduler, settings, clock):
    def _make(*, processor=None, partitions=None, **overrides) -> BatchJobService:
        cfg = EngineSettings(**{**settings.__dict__, **overrides})
        return BatchJobService(
            repository=repository,
            provider=catalog,
            processor=processor or StagedItemProcessor(score=lambda item: 80, catalog=catalog, clock=clock),
            activity_source=catalog,
            scheduler=scheduler,
            settings=cfg,
            partitions=partitions,
            clock=clock,
            sleep=lambda _seconds: None,
        )

    return _make


@pytest.fixture
def client(make_service):
    from fastapi.testclient import TestClient

    from batch_engine.main import create_app

    return TestClient(create_app(make_service(partitions=["p1", "p2"])))


@pytest.fixture
def seed(catalog):
    def _seed(count: int, **kwargs) -> list[str]:
        return seed_items(catalog, count=count, **kwargs)

    return _seed
