from __future__ import annotations

import pytest

from batch_engine.errors import ApiError
from batch_engine.models import JobStatus, PipelineOptions
from batch_engine.service import BatchJobService, create_service_from_env


def test_create_rejects_inconsistent_scope(make_service):
    svc = make_service()
    cases = [
        {"scope": "global", "scope_filter": "p1"},
        {"scope": "partition"},
        {"scope": "entity", "scope_filter": "  "},
        {"scope": "galaxy"},
        {"scope": "global", "chunk_size": 0},
        {"scope": "global", "chunk_size": 201},
    ]
    for kwargs in cases:
        with pytest.raises(ApiError) as exc_info:
            svc.create_and_start(**kwargs)
        assert exc_info.value.code == "JOB_OPTIONS_INVALID", kwargs
        assert exc_info.value.http_status == 400


def test_create_rejects_second_active_job_for_same_scope(make_service, seed):
    svc = make_service()
    seed(5)
    first = svc.create_and_start(scope="partition", scope_filter="p1")

    with pytest.raises(ApiError) as exc_info:
        svc.create_and_start(scope="partition", scope_filter="p1")
    assert exc_info.value.code == "JOB_SCOPE_CONFLICT"
    assert first.job_id in exc_info.value.message

    svc.cancel(first.job_id)
    assert svc.create_and_start(scope="partition", scope_filter="p1").status == JobStatus.PENDING


def test_create_enforces_active_job_cap(make_service, seed):
    svc = make_service(max_active_jobs=2)
    for partition in ("a", "b", "c"):
        seed(1, partition_id=partition)
    svc.create_and_start(scope="partition", scope_filter="a")
    svc.create_and_start(scope="partition", scope_filter="b")

    with pytest.raises(ApiError) as exc_info:
        svc.create_and_start(scope="partition", scope_filter="c")
    assert exc_info.value.code == "JOB_CAPACITY_EXHAUSTED"
    assert exc_info.value.http_status == 429
    assert exc_info.value.retryable is True


def test_chunk_size_override_is_fixed_at_creation(make_service, seed):
    svc = make_service()
    seed(9)
    job = svc.create_and_start(scope="global", chunk_size=4)

    assert job.chunk_size == 4
    assert svc.continue_job(job.job_id).items_processed == 4
    assert svc.get_status(job.job_id).chunk_size == 4


def test_already_processed_items_are_skipped_unless_forced(make_service, seed, clock):
    svc = make_service()
    seed(5)
    first = svc.create_and_start(scope="global")
    svc.continue_job(first.job_id)
    clock.advance(minutes=1)

    again = svc.create_and_start(scope="global")
    assert again.total_items == 0
    result = svc.continue_job(again.job_id)
    assert result.is_job_complete is True
    assert result.items_processed == 0

    forced = svc.create_and_start(scope="global", options=PipelineOptions(force_reprocess=True))
    assert forced.total_items == 5
    assert svc.continue_job(forced.job_id).items_processed == 5


def test_items_that_failed_earlier_are_picked_up_by_next_job(make_service, seed, clock, catalog):
    from batch_engine.processors import StagedItemProcessor

    broken = {"on": True}

    def _enrich(item):
        if broken["on"]:
            raise ConnectionError("enrichment api down")

    svc = make_service(processor=StagedItemProcessor(enrich=_enrich, catalog=catalog, clock=clock))
    seed(4)
    first = svc.create_and_start(scope="partition", scope_filter="p1")
    result = svc.continue_job(first.job_id)
    assert result.is_job_complete is True
    assert result.failed == 4
    assert catalog.pending_count(partition_id="p1") == 4

    clock.advance(minutes=1)
    broken["on"] = False
    retry = svc.create_and_start(scope="partition", scope_filter="p1")

    assert retry.total_items == 4
    rerun = svc.continue_job(retry.job_id)
    assert rerun.items_processed == 4
    assert rerun.succeeded == 4
    assert catalog.pending_count(partition_id="p1") == 0


def test_entity_scope_only_covers_matching_items(make_service, seed):
    svc = make_service()
    seed(9)
    job = svc.create_and_start(scope="entity", scope_filter="artist_1")

    assert job.total_items == 3
    result = svc.continue_job(job.job_id)
    assert result.items_processed == 3
    assert result.is_job_complete is True


def test_list_jobs_filters_and_paginates(make_service, seed, clock):
    svc = make_service(max_active_jobs=0)
    for idx in range(5):
        seed(1, partition_id=f"p{idx}")
        svc.create_and_start(scope="partition", scope_filter=f"p{idx}")
        clock.advance(seconds=1)
    done = svc.list_jobs()["items"][0]
    svc.continue_job(done.job_id)

    page = svc.list_jobs(limit=2)
    assert page["total"] == 5
    assert len(page["items"]) == 2
    assert page["next_cursor"] == "2"
    last = svc.list_jobs(cursor="4", limit=2)
    assert len(last["items"]) == 1
    assert last["next_cursor"] is None

    completed = svc.list_jobs(status="completed")
    assert [j.job_id for j in completed["items"]] == [done.job_id]

    with pytest.raises(ApiError):
        svc.list_jobs(status="sleeping")


def test_live_metrics_through_service(make_service, seed):
    svc = make_service()
    seed(12)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)

    snap = svc.get_live_metrics(job.job_id)

    assert snap.items_last_5_minutes == 10
    assert snap.rate_per_minute == 2.0
    assert snap.remaining_items == 2
    assert snap.eta_minutes == 1
    assert snap.is_alive is True


def test_create_service_from_env_uses_queue_scheduler(tmp_path, catalog):
    from batch_engine.processors import StagedItemProcessor
    from batch_engine.queue_backend import InMemoryQueueBackend

    queue = InMemoryQueueBackend()
    svc = create_service_from_env(
        provider=catalog,
        processor=StagedItemProcessor(catalog=catalog),
        queue_backend=queue,
        environ={
            "ENGINE_SCHEDULER": "queue",
            "ENGINE_JOBS_BACKEND": "sqlite",
            "ENGINE_JOBS_SQLITE_PATH": str(tmp_path / "jobs.sqlite3"),
            "ENGINE_CHUNK_SIZE": "7",
        },
    )
    catalog.add_item(item_id="i1", partition_id="p1")

    job = svc.create_and_start(scope="global")

    assert isinstance(svc, BatchJobService)
    assert job.chunk_size == 7
    assert queue.pending_count(queue_name="continuations") == 1
    msg = queue.dequeue(queue_name="continuations")
    assert msg is not None and msg.payload == {"job_id": job.job_id}


def test_create_service_from_env_rejects_unknown_scheduler(catalog):
    from batch_engine.processors import StagedItemProcessor

    with pytest.raises(RuntimeError, match="unsupported scheduler backend"):
        create_service_from_env(
            provider=catalog,
            processor=StagedItemProcessor(),
            environ={"ENGINE_SCHEDULER": "cron"},
        )
