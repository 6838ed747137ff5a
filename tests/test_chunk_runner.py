from __future__ import annotations

from datetime import UTC, datetime

import pytest

from batch_engine.catalog import InMemoryItemCatalog
from batch_engine.chunk_runner import ConsecutiveErrorBreaker, ItemPacer
from batch_engine.errors import ApiError
from batch_engine.models import JobStatus
from batch_engine.processors import ItemOutcome, StagedItemProcessor


class HookedProcessor:
    """Delegates to a real processor after calling ``hook(index, item)``."""

    def __init__(self, inner, hook):
        self.inner = inner
        self.hook = hook
        self.calls: list[str] = []

    def process(self, item, options):
        self.hook(len(self.calls), item)
        self.calls.append(item.item_id)
        return self.inner.process(item, options)


class Crash(BaseException):
    pass


def _boom(item):
    raise RuntimeError("upstream 503")


def test_job_completes_after_exactly_four_continue_calls(make_service, seed, scheduler):
    svc = make_service()
    seed(10 * 3 + 7)
    job = svc.create_and_start(scope="global")
    assert job.status == JobStatus.PENDING
    assert job.total_items == 37
    assert scheduler.calls == [(0, job.job_id)]

    for expected_cursor in (10, 20, 30):
        result = svc.continue_job(job.job_id)
        assert result.lock_acquired is True
        assert result.items_processed == 10
        assert result.is_job_complete is False
        assert result.continuation_scheduled is True
        assert svc.get_status(job.job_id).cursor == expected_cursor

    final = svc.continue_job(job.job_id)
    assert final.is_job_complete is True
    assert final.items_processed == 7
    assert final.continuation_scheduled is False

    done = svc.get_status(job.job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.cursor == done.total_items == 37
    assert done.processed_count == done.succeeded_count + done.failed_count == 37
    assert done.chunks_processed == 4
    assert done.completed_at is not None
    assert done.lock_token is None
    assert len(scheduler.calls) == 4
    assert all(delay == svc.settings.continuation_delay_s for delay, _ in scheduler.calls[1:])


def test_first_chunk_moves_pending_job_to_running(make_service, seed, clock):
    svc = make_service()
    seed(25)
    job = svc.create_and_start(scope="global")

    svc.continue_job(job.job_id)

    running = svc.get_status(job.job_id)
    assert running.status == JobStatus.RUNNING
    assert running.started_at == clock.now
    assert running.last_activity_at == clock.now


def test_crash_mid_chunk_replays_from_last_committed_cursor(make_service, seed, clock, catalog):
    svc = make_service()
    seed(25)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)
    assert svc.get_status(job.job_id).cursor == 10

    def crash_on_fourth(index, item):
        if index == 3:
            raise Crash()

    crashing = HookedProcessor(svc.runner.processor, crash_on_fourth)
    svc.runner.processor = crashing
    with pytest.raises(Crash):
        svc.continue_job(job.job_id)

    after_crash = svc.get_status(job.job_id)
    assert after_crash.cursor == 10
    assert after_crash.processed_count == 10
    assert after_crash.lock_token is not None

    svc.runner.processor = StagedItemProcessor(score=lambda item: 80, catalog=catalog, clock=clock)
    blocked = svc.continue_job(job.job_id)
    assert blocked.lock_acquired is False

    clock.advance(seconds=svc.settings.lock_timeout_s + 1)
    replayed = svc.continue_job(job.job_id)
    assert replayed.lock_acquired is True
    assert replayed.items_processed == 10

    resumed = svc.get_status(job.job_id)
    assert resumed.cursor == 20
    assert resumed.processed_count == 20
    assert resumed.succeeded_count == 20


def test_reentrant_continue_during_chunk_does_not_get_the_lease(make_service, seed, scheduler):
    svc = make_service()
    seed(15)
    job = svc.create_and_start(scope="global")
    nested: list = []

    def reenter(index, item):
        if index == 0:
            nested.append(svc.continue_job(job.job_id))

    svc.runner.processor = HookedProcessor(svc.runner.processor, reenter)
    outer = svc.continue_job(job.job_id)

    assert outer.lock_acquired is True
    assert outer.items_processed == 10
    assert len(nested) == 1
    assert nested[0].lock_acquired is False
    assert nested[0].items_processed == 0
    assert nested[0].continuation_scheduled is False
    # initial start + one continuation from the outer chunk only
    assert scheduler.job_ids() == [job.job_id, job.job_id]


def test_cancel_between_items_stops_chunk_and_marks_cancelled(make_service, seed, scheduler):
    svc = make_service()
    seed(20)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)

    def cancel_on_third(index, item):
        if index == 2:
            assert svc.cancel(job.job_id).status == JobStatus.CANCELLING

    svc.runner.processor = HookedProcessor(svc.runner.processor, cancel_on_third)
    calls_before = len(scheduler.calls)
    result = svc.continue_job(job.job_id)

    assert result.was_cancelled is True
    assert result.items_processed == 3
    assert result.continuation_scheduled is False
    cancelled = svc.get_status(job.job_id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cursor == 13
    assert cancelled.completed_at is not None
    assert len(scheduler.calls) == calls_before


def test_cancelling_job_settles_on_next_continue_without_processing(make_service, seed):
    svc = make_service()
    seed(20)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)
    svc.cancel(job.job_id)

    result = svc.continue_job(job.job_id)

    assert result.was_cancelled is True
    assert result.items_processed == 0
    assert svc.get_status(job.job_id).status == JobStatus.CANCELLED
    assert svc.get_status(job.job_id).cursor == 10


def test_consecutive_failures_trip_breaker_and_pause_job(make_service, seed, catalog, clock, scheduler):
    failing = StagedItemProcessor(enrich=_boom, catalog=catalog, clock=clock)
    svc = make_service(processor=failing)
    seed(20)
    job = svc.create_and_start(scope="global")

    result = svc.continue_job(job.job_id)

    assert result.was_paused is True
    assert result.items_processed == 5
    assert result.failed == 5
    assert result.continuation_scheduled is False
    paused = svc.get_status(job.job_id)
    assert paused.status == JobStatus.PAUSED
    assert paused.cursor == 5
    assert paused.failed_count == 5
    assert paused.consecutive_errors == 5
    assert "5 consecutive" in (paused.error_message or "")
    assert scheduler.calls == [(0, job.job_id)]

    again = svc.continue_job(job.job_id)
    assert again.lock_acquired is False
    assert again.was_paused is True
    assert svc.get_status(job.job_id).cursor == 5


def test_failure_streak_carries_across_chunks(make_service, seed, catalog, clock):
    calls = {"n": 0}

    def fail_from_eighth(item):
        calls["n"] += 1
        if calls["n"] >= 8:
            raise RuntimeError("bad payload")

    svc = make_service(processor=StagedItemProcessor(enrich=fail_from_eighth, catalog=catalog, clock=clock))
    seed(30)
    job = svc.create_and_start(scope="global")

    first = svc.continue_job(job.job_id)
    assert first.failed == 3
    assert svc.get_status(job.job_id).consecutive_errors == 3

    second = svc.continue_job(job.job_id)
    assert second.was_paused is True
    assert second.items_processed == 2


def test_success_resets_failure_streak(make_service, seed, catalog, clock):
    calls = {"n": 0}

    def fail_every_other(item):
        calls["n"] += 1
        if calls["n"] % 2 == 0:
            raise RuntimeError("flaky")

    svc = make_service(processor=StagedItemProcessor(enrich=fail_every_other, catalog=catalog, clock=clock))
    seed(9)
    job = svc.create_and_start(scope="global")

    result = svc.continue_job(job.job_id)

    assert result.is_job_complete is True
    done = svc.get_status(job.job_id)
    assert done.succeeded_count == 5
    assert done.failed_count == 4
    assert done.status == JobStatus.COMPLETED


def test_pause_mid_chunk_keeps_progress_and_releases_lease(make_service, seed, scheduler):
    svc = make_service()
    seed(20)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)

    def pause_on_second(index, item):
        if index == 1:
            svc.pause(job.job_id)

    svc.runner.processor = HookedProcessor(svc.runner.processor, pause_on_second)
    result = svc.continue_job(job.job_id)

    assert result.was_paused is True
    assert result.items_processed == 2
    paused = svc.get_status(job.job_id)
    assert paused.status == JobStatus.PAUSED
    assert paused.cursor == 12
    assert paused.lock_token is None

    calls_before = len(scheduler.calls)
    svc.resume(job.job_id)
    assert scheduler.calls[calls_before:] == [(0, job.job_id)]


def test_provider_failure_releases_lease_without_advancing(make_service, seed, repository, catalog, scheduler):
    class FlakyCatalog(InMemoryItemCatalog):
        def fetch(self, **kwargs):
            raise ConnectionError("catalog unavailable")

    svc = make_service()
    seed(15)
    job = svc.create_and_start(scope="global")
    svc.runner.provider = FlakyCatalog()

    result = svc.continue_job(job.job_id)

    assert result.lock_acquired is True
    assert result.items_processed == 0
    assert result.error_message == "provider error: catalog unavailable"
    assert result.continuation_scheduled is True
    stored = repository.get(job.job_id)
    assert stored.cursor == 0
    assert stored.lock_token is None
    assert stored.status == JobStatus.RUNNING

    svc.runner.provider = catalog
    svc.continue_job(job.job_id)
    assert repository.get(job.job_id).error_message is None


def test_held_lease_blocks_until_forced_or_stale(make_service, seed, repository, clock):
    svc = make_service()
    seed(15)
    job = svc.create_and_start(scope="global")
    assert repository.try_acquire_lease(
        job_id=job.job_id, token="other-runner", now=clock.now, lock_timeout_s=90
    ) is not None

    busy = svc.continue_job(job.job_id)
    assert busy.lock_acquired is False
    assert repository.get(job.job_id).cursor == 0

    forced = svc.continue_job(job.job_id, force_lock=True)
    assert forced.lock_acquired is True
    assert repository.get(job.job_id).cursor == 10

    repository.try_acquire_lease(job_id=job.job_id, token="other-runner", now=clock.now, lock_timeout_s=90)
    clock.advance(seconds=89)
    assert svc.continue_job(job.job_id).lock_acquired is False
    clock.advance(seconds=2)
    assert svc.continue_job(job.job_id).is_job_complete is True


def test_collection_shrinking_completes_on_short_read(make_service, seed, catalog):
    svc = make_service()
    ids = seed(25)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)
    for item_id in ids[15:]:
        catalog.remove_item(item_id)

    result = svc.continue_job(job.job_id)

    assert result.is_job_complete is True
    done = svc.get_status(job.job_id)
    assert done.cursor == done.total_items == 15


def test_items_added_after_creation_are_processed_before_completion(make_service, seed, catalog):
    svc = make_service()
    seed(10)
    job = svc.create_and_start(scope="global")
    assert job.total_items == 10
    seed(5, prefix="late", start=datetime(2026, 2, 1, tzinfo=UTC))

    first = svc.continue_job(job.job_id)
    assert first.is_job_complete is False
    assert first.continuation_scheduled is True

    second = svc.continue_job(job.job_id)
    assert second.items_processed == 5
    assert second.is_job_complete is True
    done = svc.get_status(job.job_id)
    assert done.cursor == done.total_items == 15


def test_full_last_chunk_completes_on_following_empty_read(make_service, seed):
    svc = make_service()
    seed(20)
    job = svc.create_and_start(scope="global")

    assert svc.continue_job(job.job_id).is_job_complete is False
    assert svc.continue_job(job.job_id).is_job_complete is False
    final = svc.continue_job(job.job_id)

    assert final.items_processed == 0
    assert final.is_job_complete is True
    assert svc.get_status(job.job_id).cursor == 20


def test_quality_scores_are_bucketed_and_averaged(make_service, seed, catalog, clock):
    scores = iter([10, 40, 60, 90, 100])
    svc = make_service(processor=StagedItemProcessor(score=lambda item: next(scores), catalog=catalog, clock=clock))
    seed(5)
    job = svc.create_and_start(scope="global")

    svc.continue_job(job.job_id)

    done = svc.get_status(job.job_id)
    assert done.quality_histogram == {"0-25": 1, "26-50": 1, "51-75": 1, "76-100": 2}
    assert done.avg_quality_score == 60
    assert done.last_chunk_stats["attempted"] == 5


def test_skip_flags_reach_the_processor(make_service, seed):
    from batch_engine.models import PipelineOptions

    seen = []

    class Recorder:
        def process(self, item, options):
            seen.append(options)
            return ItemOutcome(success=True, enriched=not options.skip_enrichment)

    svc = make_service(processor=Recorder())
    seed(3)
    job = svc.create_and_start(scope="global", options=PipelineOptions(skip_enrichment=True))
    svc.continue_job(job.job_id)

    assert {o.skip_enrichment for o in seen} == {True}
    assert svc.get_status(job.job_id).enriched_count == 0


def test_processor_exception_counts_as_item_failure(make_service, seed):
    class Exploding:
        def process(self, item, options):
            raise ValueError("unexpected")

    svc = make_service(processor=Exploding())
    seed(3)
    job = svc.create_and_start(scope="global")

    result = svc.continue_job(job.job_id)

    assert result.failed == 3
    assert svc.get_status(job.job_id).status == JobStatus.COMPLETED


def test_terminal_job_continue_is_a_noop(make_service, seed, scheduler):
    svc = make_service()
    seed(3)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)
    calls_before = len(scheduler.calls)

    result = svc.continue_job(job.job_id)

    assert result.lock_acquired is False
    assert result.is_job_complete is True
    assert len(scheduler.calls) == calls_before


def test_unknown_job_raises_not_found(make_service):
    svc = make_service()
    with pytest.raises(ApiError) as exc_info:
        svc.continue_job("job_missing")
    assert exc_info.value.code == "JOB_NOT_FOUND"
    assert exc_info.value.http_status == 404


def test_item_pacer_backs_off_and_recovers_within_bounds():
    pacer = ItemPacer(base_ms=300, max_ms=1500)
    for _ in range(10):
        pacer.on_failure()
    assert pacer.current_ms == 1500
    for _ in range(50):
        pacer.on_success()
    assert pacer.current_ms == 300
    assert pacer.delay_s == pytest.approx(0.3)


def test_breaker_counts_only_consecutive_failures():
    breaker = ConsecutiveErrorBreaker(threshold=3, initial=1)
    assert breaker.record(False) is False
    assert breaker.record(True) is False
    assert breaker.count == 0
    assert breaker.record(False) is False
    assert breaker.record(False) is False
    assert breaker.record(False) is True
