from __future__ import annotations

import heapq
import itertools
import json
import os
import sqlite3
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def _due(available_at: datetime | None) -> datetime:
    if available_at is None:
        return datetime.now(UTC)
    if available_at.tzinfo is None:
        available_at = available_at.replace(tzinfo=UTC)
    return available_at.astimezone(UTC)


class InMemoryQueueBackend:
    """Delay-aware queue kept in process memory; messages pop in due order."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, list[tuple[float, int, QueueMessage]]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._seq = itertools.count()

    def _push(self, msg: QueueMessage, due_at: datetime) -> None:
        heap = self._queues.setdefault(msg.queue_name, [])
        heapq.heappush(heap, (due_at.timestamp(), next(self._seq), msg))

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        due_at = _due(available_at)
        msg = QueueMessage(
            message_id=_new_message_id(),
            queue_name=queue_name,
            payload=dict(payload),
            attempt=int(payload.get("attempt", 0)),
            available_at=due_at.isoformat(),
        )
        with self._lock:
            self._push(msg, due_at)
        return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            heap = self._queues.get(queue_name)
            if not heap:
                return None
            due_ts, _, msg = heap[0]
            if due_ts > datetime.now(UTC).timestamp():
                return None
            heapq.heappop(heap)
            self._inflight[msg.message_id] = msg
            return msg

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                msg.available_at = due_at.isoformat()
                self._push(msg, due_at)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, []))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


class SqliteQueueBackend:
    """SQLite-backed queue so scheduled continuations survive a process restart."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS continuation_messages (
                    message_id TEXT PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    due_ts REAL NOT NULL,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_continuation_messages_due
                ON continuation_messages(queue_name, status, due_ts)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        due_at = _due(available_at)
        msg = QueueMessage(
            message_id=_new_message_id(),
            queue_name=queue_name,
            payload=dict(payload),
            attempt=int(payload.get("attempt", 0)),
            available_at=due_at.isoformat(),
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO continuation_messages(
                        message_id, queue_name, payload, attempt, status, due_ts, available_at, created_at
                    ) VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        msg.message_id,
                        queue_name,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        msg.attempt,
                        due_at.timestamp(),
                        msg.available_at,
                        datetime.now(UTC).isoformat(),
                    ),
                )
                conn.commit()
        return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, queue_name, payload, attempt, available_at
                    FROM continuation_messages
                    WHERE queue_name = ? AND status = 'pending' AND due_ts <= ?
                    ORDER BY due_ts ASC, created_at ASC
                    LIMIT 1
                    """,
                    (queue_name, datetime.now(UTC).timestamp()),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                conn.execute(
                    "UPDATE continuation_messages SET status = 'inflight' WHERE message_id = ?",
                    (row["message_id"],),
                )
                conn.commit()
                return self._row_to_message(row)

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM continuation_messages WHERE message_id = ? AND status = 'inflight'",
                    (message_id,),
                )
                conn.commit()

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT message_id, queue_name, payload, attempt, available_at
                    FROM continuation_messages
                    WHERE message_id = ? AND status = 'inflight'
                    LIMIT 1
                    """,
                    (message_id,),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                msg = self._row_to_message(row)
                msg.attempt += 1
                if requeue:
                    due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                    msg.available_at = due_at.isoformat()
                    conn.execute(
                        """
                        UPDATE continuation_messages
                        SET status = 'pending', attempt = ?, due_ts = ?, available_at = ?
                        WHERE message_id = ?
                        """,
                        (msg.attempt, due_at.timestamp(), msg.available_at, message_id),
                    )
                else:
                    conn.execute("DELETE FROM continuation_messages WHERE message_id = ?", (message_id,))
                conn.commit()
                return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT COUNT(1) AS cnt
                    FROM continuation_messages
                    WHERE queue_name = ? AND status = 'pending'
                    """,
                    (queue_name,),
                ).fetchone()
                return int(row["cnt"]) if row is not None else 0

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM continuation_messages")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for ENGINE_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis queue: pending ids live in a sorted set scored by due time, bodies in plain keys."""

    def __init__(self, *, dsn: str, namespace: str = "engine", client: Any | None = None) -> None:
        if client is None and not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "engine"
        self._lock = threading.RLock()
        if client is None:
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _save(self, msg: QueueMessage) -> None:
        self._client.set(
            self._msg_key(msg.message_id),
            json.dumps(
                {
                    "queue_name": msg.queue_name,
                    "payload": msg.payload,
                    "attempt": msg.attempt,
                    "available_at": msg.available_at,
                },
                sort_keys=True,
                ensure_ascii=True,
                separators=(",", ":"),
            ),
        )

    def _load(self, message_id: str) -> QueueMessage | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload") or {},
            attempt=int(data.get("attempt", 0)),
            available_at=data.get("available_at"),
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        due_at = _due(available_at)
        msg = QueueMessage(
            message_id=_new_message_id(),
            queue_name=queue_name,
            payload=dict(payload),
            attempt=int(payload.get("attempt", 0)),
            available_at=due_at.isoformat(),
        )
        with self._lock:
            self._save(msg)
            self._client.zadd(self._pending_key(queue_name), {msg.message_id: due_at.timestamp()})
            self._client.sadd(self._registry_key(), self._pending_key(queue_name), self._inflight_key(queue_name))
        return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        pending_key = self._pending_key(queue_name)
        with self._lock:
            now_ts = datetime.now(UTC).timestamp()
            for message_id in self._client.zrangebyscore(pending_key, "-inf", now_ts, start=0, num=10):
                # zrem is the claim; another consumer may have taken the id first.
                if not self._client.zrem(pending_key, message_id):
                    continue
                msg = self._load(message_id)
                if msg is None:
                    continue
                self._client.sadd(self._inflight_key(queue_name), message_id)
                return msg
        return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            msg = self._load(message_id)
            if msg is None:
                return
            self._client.srem(self._inflight_key(msg.queue_name), message_id)
            self._client.delete(self._msg_key(message_id))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._load(message_id)
            if msg is None:
                return None
            if not self._client.srem(self._inflight_key(msg.queue_name), message_id):
                return None
            msg.attempt += 1
            if not requeue:
                self._client.delete(self._msg_key(message_id))
                return msg
            due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
            msg.available_at = due_at.isoformat()
            self._save(msg)
            self._client.zadd(self._pending_key(msg.queue_name), {message_id: due_at.timestamp()})
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.zcard(self._pending_key(queue_name)))

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = list(self._client.smembers(registry))
            message_ids: list[str] = []
            for key in keys:
                if key.endswith(":pending"):
                    message_ids.extend(self._client.zrange(key, 0, -1))
                else:
                    message_ids.extend(self._client.smembers(key))
            doomed = keys + [self._msg_key(x) for x in message_ids]
            if doomed:
                self._client.delete(*doomed)
            self._client.delete(registry)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = str(env.get("ENGINE_QUEUE_BACKEND", "memory")).strip().lower() or "memory"
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        path = env.get("ENGINE_QUEUE_SQLITE_PATH", ".runtime/engine_queue.sqlite3")
        return SqliteQueueBackend(path)
    if backend == "redis":
        return RedisQueueBackend(
            dsn=str(env.get("REDIS_DSN", "")),
            namespace=str(env.get("ENGINE_QUEUE_KEY_PREFIX", "engine")),
        )
    raise RuntimeError(f"unsupported queue backend: {backend}")
