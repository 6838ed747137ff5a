from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

MIN_CHUNK_SIZE = 1
MAX_CHUNK_SIZE = 200


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


def clamp_chunk_size(value: int) -> int:
    return min(max(int(value), MIN_CHUNK_SIZE), MAX_CHUNK_SIZE)


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _env_bool(env, "ENGINE_REQUIRE_TRUESTACK", default=False)


@dataclass
class EngineSettings:
    chunk_size: int = 30
    lock_timeout_s: int = 90
    continuation_delay_s: float = 3.0
    item_delay_ms: int = 500
    item_delay_max_ms: int = 1500
    item_delay_backoff: float = 1.5
    item_delay_cooldown: float = 0.9
    max_consecutive_errors: int = 5
    orphan_threshold_s: int = 300
    alive_threshold_s: int = 120
    max_active_jobs: int = 5
    sequence_partitions: list[str] = field(default_factory=list)
    jobs_backend: str = "memory"
    jobs_sqlite_path: str = ".runtime/engine_jobs.sqlite3"
    postgres_dsn: str = ""
    jobs_table: str = "batch_jobs"
    scheduler_backend: str = "thread"
    continuation_queue: str = "continuations"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        env = os.environ if environ is None else environ
        item_delay_ms = _env_int(env, "ENGINE_ITEM_DELAY_MS", default=500, minimum=0)
        return cls(
            chunk_size=clamp_chunk_size(_env_int(env, "ENGINE_CHUNK_SIZE", default=30, minimum=MIN_CHUNK_SIZE)),
            lock_timeout_s=_env_int(env, "ENGINE_LOCK_TIMEOUT_S", default=90, minimum=1),
            continuation_delay_s=_env_float(env, "ENGINE_CONTINUATION_DELAY_S", default=3.0),
            item_delay_ms=item_delay_ms,
            item_delay_max_ms=_env_int(env, "ENGINE_ITEM_DELAY_MAX_MS", default=1500, minimum=item_delay_ms),
            max_consecutive_errors=_env_int(env, "ENGINE_MAX_CONSECUTIVE_ERRORS", default=5, minimum=1),
            orphan_threshold_s=_env_int(env, "ENGINE_ORPHAN_THRESHOLD_S", default=300, minimum=1),
            alive_threshold_s=_env_int(env, "ENGINE_ALIVE_THRESHOLD_S", default=120, minimum=1),
            max_active_jobs=_env_int(env, "ENGINE_MAX_ACTIVE_JOBS", default=5, minimum=0),
            sequence_partitions=_split_csv(str(env.get("SEQUENCE_PARTITIONS", ""))),
            jobs_backend=str(env.get("ENGINE_JOBS_BACKEND", "memory")).strip().lower() or "memory",
            jobs_sqlite_path=str(env.get("ENGINE_JOBS_SQLITE_PATH", ".runtime/engine_jobs.sqlite3")),
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            jobs_table=str(env.get("ENGINE_JOBS_TABLE", "batch_jobs")).strip() or "batch_jobs",
            scheduler_backend=str(env.get("ENGINE_SCHEDULER", "thread")).strip().lower() or "thread",
            continuation_queue=str(env.get("WORKER_QUEUE_NAME", "continuations")).strip() or "continuations",
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "lock_timeout_s": self.lock_timeout_s,
            "continuation_delay_s": self.continuation_delay_s,
            "item_delay_ms": self.item_delay_ms,
            "item_delay_max_ms": self.item_delay_max_ms,
            "max_consecutive_errors": self.max_consecutive_errors,
            "orphan_threshold_s": self.orphan_threshold_s,
            "alive_threshold_s": self.alive_threshold_s,
            "max_active_jobs": self.max_active_jobs,
            "sequence_partitions": list(self.sequence_partitions),
            "jobs_backend": self.jobs_backend,
            "scheduler_backend": self.scheduler_backend,
        }
