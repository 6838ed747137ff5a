from __future__ import annotations

from datetime import timedelta

from batch_engine.models import Job, JobScope, JobStatus
from batch_engine.reaper import ORPHANED_MESSAGE, OrphanReaper


def _job(repository, clock, job_id: str, *, status: JobStatus, idle: timedelta | None) -> Job:
    return repository.create(
        job=Job(
            job_id=job_id,
            scope=JobScope.GLOBAL,
            scope_filter=None,
            chunk_size=10,
            status=status,
            lock_token="stale-runner" if status == JobStatus.RUNNING else None,
            created_at=clock.now - timedelta(hours=3),
            last_activity_at=clock.now - idle if idle is not None else None,
        )
    )


def test_reaps_only_running_jobs_past_threshold(repository, clock):
    _job(repository, clock, "job_stale", status=JobStatus.RUNNING, idle=timedelta(minutes=6))
    _job(repository, clock, "job_fresh", status=JobStatus.RUNNING, idle=timedelta(minutes=4))
    _job(repository, clock, "job_paused", status=JobStatus.PAUSED, idle=timedelta(hours=2))
    _job(repository, clock, "job_pending", status=JobStatus.PENDING, idle=None)

    reaped = OrphanReaper(repository=repository, threshold_s=300, clock=clock).reap()

    assert [j.job_id for j in reaped] == ["job_stale"]
    stale = repository.get("job_stale")
    assert stale.status == JobStatus.FAILED
    assert stale.error_message == ORPHANED_MESSAGE
    assert stale.completed_at == clock.now
    assert stale.lock_token is None
    assert repository.get("job_fresh").status == JobStatus.RUNNING
    assert repository.get("job_paused").status == JobStatus.PAUSED
    assert repository.get("job_pending").status == JobStatus.PENDING


def test_activity_exactly_at_threshold_is_kept(repository, clock):
    _job(repository, clock, "job_edge", status=JobStatus.RUNNING, idle=timedelta(seconds=300))

    assert OrphanReaper(repository=repository, threshold_s=300, clock=clock).reap() == []
    assert repository.get("job_edge").status == JobStatus.RUNNING


def test_reaping_is_idempotent(repository, clock):
    _job(repository, clock, "job_stale", status=JobStatus.RUNNING, idle=timedelta(minutes=10))
    reaper = OrphanReaper(repository=repository, threshold_s=300, clock=clock)

    assert len(reaper.reap()) == 1
    assert reaper.reap() == []


def test_service_cleanup_reaps_stalled_chain(make_service, seed, clock):
    svc = make_service()
    seed(25)
    job = svc.create_and_start(scope="global")
    svc.continue_job(job.job_id)

    clock.advance(minutes=5, seconds=1)
    result = svc.cleanup()

    assert result["reaped"] == 1
    assert result["jobs"][0]["job_id"] == job.job_id
    failed = svc.get_status(job.job_id)
    assert failed.status == JobStatus.FAILED
    assert failed.cursor == 10


def test_job_resumed_after_stale_scan_is_not_failed(repository, clock, monkeypatch):
    repository.create(
        job=Job(
            job_id="job_between_chunks",
            scope=JobScope.GLOBAL,
            scope_filter=None,
            chunk_size=10,
            status=JobStatus.RUNNING,
            created_at=clock.now - timedelta(hours=1),
            last_activity_at=clock.now - timedelta(minutes=10),
        )
    )
    original_find_stale = repository.find_stale

    def find_stale_then_resume(**kwargs):
        found = original_find_stale(**kwargs)
        # A continuation picks the job up before the reaper writes.
        repository.try_acquire_lease(job_id="job_between_chunks", token="tok_new", now=clock.now, lock_timeout_s=90)
        return found

    monkeypatch.setattr(repository, "find_stale", find_stale_then_resume)

    assert OrphanReaper(repository=repository, threshold_s=300, clock=clock).reap() == []
    job = repository.get("job_between_chunks")
    assert job.status == JobStatus.RUNNING
    assert job.lock_token == "tok_new"
    assert job.error_message is None
