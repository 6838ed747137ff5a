from __future__ import annotations

import copy
import json
import re
import sqlite3
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from batch_engine.config import EngineSettings
from batch_engine.db.postgres import PostgresTxRunner
from batch_engine.models import Job, JobScope, JobStatus, PipelineOptions, parse_iso, to_iso

COLUMNS = (
    "job_id",
    "scope",
    "scope_filter",
    "status",
    "options",
    "total_items",
    "cursor",
    "processed_count",
    "succeeded_count",
    "failed_count",
    "enriched_count",
    "annotated_count",
    "total_quality_points",
    "avg_quality_score",
    "quality_histogram",
    "chunk_size",
    "chunks_processed",
    "consecutive_errors",
    "cancel_requested",
    "error_message",
    "lock_token",
    "last_chunk_stats",
    "created_at",
    "started_at",
    "completed_at",
    "last_activity_at",
)
_JSON_COLUMNS = frozenset({"options", "quality_histogram", "last_chunk_stats"})
_TIME_COLUMNS = frozenset({"created_at", "started_at", "completed_at", "last_activity_at"})
_IMMUTABLE_COLUMNS = frozenset({"job_id", "scope", "scope_filter", "chunk_size", "created_at"})

# Statuses in which a chunk runner may take the lease.
LEASABLE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.CANCELLING)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _validate_changes(changes: Mapping[str, Any]) -> None:
    for name in changes:
        if name not in COLUMNS:
            raise ValueError(f"unknown job field: {name}")
        if name in _IMMUTABLE_COLUMNS:
            raise ValueError(f"job field is immutable: {name}")


def _db_value(name: str, value: Any, *, iso_times: bool) -> Any:
    if isinstance(value, Enum):
        return value.value
    if name == "options" and isinstance(value, PipelineOptions):
        value = value.as_dict()
    if name in _JSON_COLUMNS:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=True, sort_keys=True)
    if name in _TIME_COLUMNS and iso_times:
        return to_iso(value)
    if name == "cancel_requested":
        return bool(value)
    return value


def _job_from_row(row: Mapping[str, Any]) -> Job:
    data = {name: row[name] for name in COLUMNS}
    for name in _JSON_COLUMNS:
        raw = data.get(name)
        if isinstance(raw, str):
            data[name] = json.loads(raw) if raw else None
    return Job.from_dict(data)


def _apply_changes(job: Job, changes: Mapping[str, Any]) -> Job:
    updated = copy.deepcopy(job)
    for name, value in changes.items():
        if name == "status":
            value = JobStatus(value)
        elif name == "options" and isinstance(value, dict):
            value = PipelineOptions.from_dict(value)
        elif name in _TIME_COLUMNS:
            value = parse_iso(value)
        setattr(updated, name, copy.deepcopy(value))
    return updated


def _lease_available(job: Job, *, now: datetime, lock_timeout_s: int, force: bool) -> bool:
    if job.status not in LEASABLE_STATUSES:
        return False
    if force or job.lock_token is None or job.last_activity_at is None:
        return True
    return job.last_activity_at <= now - timedelta(seconds=lock_timeout_s)


def _lease_changes(job: Job, *, token: str, now: datetime) -> dict[str, Any]:
    changes: dict[str, Any] = {"lock_token": token, "last_activity_at": now}
    if job.status == JobStatus.PENDING:
        changes["status"] = JobStatus.RUNNING
    if job.started_at is None:
        changes["started_at"] = now
    return changes


def _matches_update_guard(
    job: Job,
    *,
    expected_statuses: Iterable[JobStatus] | None,
    lease_token: str | None,
    stale_before: datetime | None = None,
) -> bool:
    if expected_statuses is not None and job.status not in set(expected_statuses):
        return False
    if lease_token is not None and job.lock_token != lease_token:
        return False
    if stale_before is not None and not _is_stale(job, older_than=stale_before):
        return False
    return True


def _is_stale(job: Job, *, older_than: datetime) -> bool:
    reference = job.last_activity_at or job.created_at
    return reference < older_than


def _sort_key(job: Job) -> tuple[datetime, str]:
    return (job.created_at, job.job_id)


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, Job] | None = None) -> None:
        self._lock = threading.RLock()
        self._jobs = jobs if jobs is not None else {}

    def create(self, *, job: Job) -> Job:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"job already exists: {job.job_id}")
            self._jobs[job.job_id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def list(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        scope: JobScope | None = None,
        scope_filter: str | None = None,
    ) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            jobs = [
                copy.deepcopy(j)
                for j in self._jobs.values()
                if (wanted is None or j.status in wanted)
                and (scope is None or j.scope == scope)
                and (scope_filter is None or j.scope_filter == scope_filter)
            ]
        return sorted(jobs, key=_sort_key)

    def try_acquire_lease(
        self,
        *,
        job_id: str,
        token: str,
        now: datetime,
        lock_timeout_s: int,
        force: bool = False,
    ) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not _lease_available(job, now=now, lock_timeout_s=lock_timeout_s, force=force):
                return None
            updated = _apply_changes(job, _lease_changes(job, token=token, now=now))
            self._jobs[job_id] = updated
            return copy.deepcopy(updated)

    def update(
        self,
        *,
        job_id: str,
        changes: Mapping[str, Any],
        expected_statuses: Iterable[JobStatus] | None = None,
        lease_token: str | None = None,
        stale_before: datetime | None = None,
    ) -> Job | None:
        _validate_changes(changes)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if not _matches_update_guard(
                job, expected_statuses=expected_statuses, lease_token=lease_token, stale_before=stale_before
            ):
                return None
            updated = _apply_changes(job, changes)
            self._jobs[job_id] = updated
            return copy.deepcopy(updated)

    def find_stale(self, *, statuses: Iterable[JobStatus], older_than: datetime) -> list[Job]:
        return [j for j in self.list(statuses=statuses) if _is_stale(j, older_than=older_than)]

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


class SqliteJobsRepository:
    """SQLite-backed job store; conditional writes run under BEGIN IMMEDIATE."""

    def __init__(self, db_path: str | Path, *, table_name: str = "batch_jobs") -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = _validate_identifier(table_name)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table_name} (
                    job_id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    scope_filter TEXT,
                    status TEXT NOT NULL,
                    options TEXT NOT NULL,
                    total_items INTEGER NOT NULL DEFAULT 0,
                    cursor INTEGER NOT NULL DEFAULT 0,
                    processed_count INTEGER NOT NULL DEFAULT 0,
                    succeeded_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    enriched_count INTEGER NOT NULL DEFAULT 0,
                    annotated_count INTEGER NOT NULL DEFAULT 0,
                    total_quality_points REAL NOT NULL DEFAULT 0,
                    avg_quality_score INTEGER,
                    quality_histogram TEXT NOT NULL DEFAULT '{{}}',
                    chunk_size INTEGER NOT NULL,
                    chunks_processed INTEGER NOT NULL DEFAULT 0,
                    consecutive_errors INTEGER NOT NULL DEFAULT 0,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    lock_token TEXT,
                    last_chunk_stats TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    last_activity_at TEXT
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS idx_{self._table_name}_status
                ON {self._table_name}(status, created_at)
                """
            )
            conn.commit()

    def _select_one(self, conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute(
            f"SELECT {', '.join(COLUMNS)} FROM {self._table_name} WHERE job_id = ? LIMIT 1",
            (job_id,),
        ).fetchone()
        return _job_from_row(row) if row is not None else None

    def _write_changes(self, conn: sqlite3.Connection, job_id: str, changes: Mapping[str, Any]) -> None:
        names = list(changes)
        assignments = ", ".join(f"{name} = ?" for name in names)
        params = [_db_value(name, changes[name], iso_times=True) for name in names]
        conn.execute(
            f"UPDATE {self._table_name} SET {assignments} WHERE job_id = ?",
            (*params, job_id),
        )

    def create(self, *, job: Job) -> Job:
        placeholders = ", ".join("?" for _ in COLUMNS)
        params = [_db_value(name, getattr(job, name), iso_times=True) for name in COLUMNS]
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        f"INSERT INTO {self._table_name} ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                        params,
                    )
                except sqlite3.IntegrityError as exc:
                    raise ValueError(f"job already exists: {job.job_id}") from exc
                conn.commit()
        return copy.deepcopy(job)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            with self._connect() as conn:
                return self._select_one(conn, job_id)

    def list(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        scope: JobScope | None = None,
        scope_filter: str | None = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            values = [JobStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if scope is not None:
            clauses.append("scope = ?")
            params.append(JobScope(scope).value)
        if scope_filter is not None:
            clauses.append("scope_filter = ?")
            params.append(scope_filter)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {', '.join(COLUMNS)} FROM {self._table_name} {where}",
                    params,
                ).fetchall()
        return sorted((_job_from_row(r) for r in rows), key=_sort_key)

    def try_acquire_lease(
        self,
        *,
        job_id: str,
        token: str,
        now: datetime,
        lock_timeout_s: int,
        force: bool = False,
    ) -> Job | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                job = self._select_one(conn, job_id)
                if job is None or not _lease_available(job, now=now, lock_timeout_s=lock_timeout_s, force=force):
                    conn.commit()
                    return None
                changes = _lease_changes(job, token=token, now=now)
                self._write_changes(conn, job_id, changes)
                conn.commit()
                return _apply_changes(job, changes)

    def update(
        self,
        *,
        job_id: str,
        changes: Mapping[str, Any],
        expected_statuses: Iterable[JobStatus] | None = None,
        lease_token: str | None = None,
        stale_before: datetime | None = None,
    ) -> Job | None:
        _validate_changes(changes)
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                job = self._select_one(conn, job_id)
                if job is None or not _matches_update_guard(
                    job, expected_statuses=expected_statuses, lease_token=lease_token, stale_before=stale_before
                ):
                    conn.commit()
                    return None
                if changes:
                    self._write_changes(conn, job_id, changes)
                conn.commit()
                return _apply_changes(job, changes)

    def find_stale(self, *, statuses: Iterable[JobStatus], older_than: datetime) -> list[Job]:
        return [j for j in self.list(statuses=statuses) if _is_stale(j, older_than=older_than)]

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"DELETE FROM {self._table_name}")
                conn.commit()


class PostgresJobsRepository:
    """Job store on PostgreSQL; lease and guarded updates are single UPDATE ... RETURNING statements."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "batch_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _placeholder(name: str) -> str:
        return "%s::jsonb" if name in _JSON_COLUMNS else "%s"

    def _fetch_jobs(self, sql: str, params: tuple[Any, ...]) -> list[Job]:
        def _op(conn: Any) -> list[Job]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [_job_from_row(dict(zip(COLUMNS, row))) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> Job | None:
        def _op(conn: Any) -> Job | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            if row is None:
                return None
            return _job_from_row(dict(zip(COLUMNS, row)))

        return self._tx_runner.run_in_tx(fn=_op)

    def create(self, *, job: Job) -> Job:
        sql = f"""
            INSERT INTO {self._table_name} ({', '.join(COLUMNS)})
            VALUES ({', '.join(self._placeholder(name) for name in COLUMNS)})
        """
        params = tuple(_db_value(name, getattr(job, name), iso_times=False) for name in COLUMNS)

        def _op(conn: Any) -> Job:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return copy.deepcopy(job)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, job_id: str) -> Job | None:
        sql = f"""
            SELECT {', '.join(COLUMNS)}
            FROM {self._table_name}
            WHERE job_id = %s
            LIMIT 1
        """
        return self._fetch_one(sql, (job_id,))

    def list(
        self,
        *,
        statuses: Iterable[JobStatus] | None = None,
        scope: JobScope | None = None,
        scope_filter: str | None = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            clauses.append("status = ANY(%s)")
            params.append([JobStatus(s).value for s in statuses])
        if scope is not None:
            clauses.append("scope = %s")
            params.append(JobScope(scope).value)
        if scope_filter is not None:
            clauses.append("scope_filter = %s")
            params.append(scope_filter)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"""
            SELECT {', '.join(COLUMNS)}
            FROM {self._table_name}
            {where}
            ORDER BY created_at ASC, job_id ASC
        """
        return self._fetch_jobs(sql, tuple(params))

    def try_acquire_lease(
        self,
        *,
        job_id: str,
        token: str,
        now: datetime,
        lock_timeout_s: int,
        force: bool = False,
    ) -> Job | None:
        sql = f"""
            UPDATE {self._table_name}
            SET lock_token = %s,
                last_activity_at = %s,
                status = CASE WHEN status = 'pending' THEN 'running' ELSE status END,
                started_at = COALESCE(started_at, %s)
            WHERE job_id = %s
              AND status = ANY(%s)
              AND (%s OR lock_token IS NULL OR last_activity_at IS NULL OR last_activity_at <= %s)
            RETURNING {', '.join(COLUMNS)}
        """
        stale_before = now - timedelta(seconds=lock_timeout_s)
        params = (
            token,
            now,
            now,
            job_id,
            [s.value for s in LEASABLE_STATUSES],
            bool(force),
            stale_before,
        )
        return self._fetch_one(sql, params)

    def update(
        self,
        *,
        job_id: str,
        changes: Mapping[str, Any],
        expected_statuses: Iterable[JobStatus] | None = None,
        lease_token: str | None = None,
        stale_before: datetime | None = None,
    ) -> Job | None:
        _validate_changes(changes)
        if not changes:
            job = self.get(job_id)
            if job is None:
                return None
            guarded = _matches_update_guard(
                job, expected_statuses=expected_statuses, lease_token=lease_token, stale_before=stale_before
            )
            return job if guarded else None
        names = list(changes)
        assignments = ", ".join(f"{name} = {self._placeholder(name)}" for name in names)
        params: list[Any] = [_db_value(name, changes[name], iso_times=False) for name in names]
        clauses = ["job_id = %s"]
        params.append(job_id)
        if expected_statuses is not None:
            clauses.append("status = ANY(%s)")
            params.append([JobStatus(s).value for s in expected_statuses])
        if lease_token is not None:
            clauses.append("lock_token = %s")
            params.append(lease_token)
        if stale_before is not None:
            clauses.append("COALESCE(last_activity_at, created_at) < %s")
            params.append(stale_before)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE {' AND '.join(clauses)}
            RETURNING {', '.join(COLUMNS)}
        """
        return self._fetch_one(sql, tuple(params))

    def find_stale(self, *, statuses: Iterable[JobStatus], older_than: datetime) -> list[Job]:
        sql = f"""
            SELECT {', '.join(COLUMNS)}
            FROM {self._table_name}
            WHERE status = ANY(%s)
              AND COALESCE(last_activity_at, created_at) < %s
            ORDER BY created_at ASC, job_id ASC
        """
        return self._fetch_jobs(sql, ([JobStatus(s).value for s in statuses], older_than))


def create_jobs_repository_from_env(
    settings: EngineSettings | None = None,
) -> InMemoryJobsRepository | SqliteJobsRepository | PostgresJobsRepository:
    cfg = settings or EngineSettings.from_env()
    backend = cfg.jobs_backend
    if backend == "memory":
        return InMemoryJobsRepository()
    if backend == "sqlite":
        return SqliteJobsRepository(cfg.jobs_sqlite_path, table_name=cfg.jobs_table)
    if backend == "postgres":
        return PostgresJobsRepository(tx_runner=PostgresTxRunner(cfg.postgres_dsn), table_name=cfg.jobs_table)
    raise RuntimeError(f"unsupported jobs backend: {backend}")
