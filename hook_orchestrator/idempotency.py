"""Idempotency keys persisted in SQLite.

Each logical operation instance gets a key whose record moves through
``pending -> in_progress -> completed | failed``. A failed record may be
claimed again (retry); a completed record short-circuits to its cached
result until it expires; a second claim while ``in_progress`` is refused
with ConflictError.

The claim is a single upsert whose ``WHERE`` clause only lets a pending,
failed or expired row be taken over, so the database, not a separate
read-then-write, decides who runs.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import IdempotencyConfig
from .context import OperationContext
from .errors import ConflictError, ResultSerializationError
from .serialization import ResultCodec, TaggedJSONCodec

if TYPE_CHECKING:
    from .metrics import MetricsRecorder

logger = logging.getLogger(__name__)


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IdempotencyRecord:
    key: str
    operation: str
    status: IdempotencyStatus
    result: str | None
    created_at: float
    expires_at: float
    retry_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


_SCHEMA = """
CREATE TABLE IF NOT EXISTS idempotency_keys (
    key TEXT PRIMARY KEY,
    operation TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_idempotency_keys_expires_at ON idempotency_keys (expires_at);
"""

# An expired row is logically absent, so taking it over resets its history.
_CLAIM_SQL = """
INSERT INTO idempotency_keys (key, operation, status, result, created_at, expires_at, retry_count)
VALUES (:key, :operation, 'in_progress', NULL, :now, :expires_at, 0)
ON CONFLICT(key) DO UPDATE SET
    operation = excluded.operation,
    status = 'in_progress',
    result = NULL,
    expires_at = excluded.expires_at,
    created_at = CASE WHEN idempotency_keys.expires_at < :now
        THEN excluded.created_at ELSE idempotency_keys.created_at END,
    retry_count = CASE WHEN idempotency_keys.expires_at < :now
        THEN 0 ELSE idempotency_keys.retry_count END
WHERE idempotency_keys.status IN ('pending', 'failed')
   OR idempotency_keys.expires_at < :now
"""


class SQLiteIdempotencyStore:
    """Key/state table backed by SQLite.

    A single connection is shared and guarded by a lock; callers on the event
    loop go through ``asyncio.to_thread``. Use a file path for records that
    survive restarts, ":memory:" for tests.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def claim(self, key: str, operation: str, now: float, expires_at: float) -> bool:
        """Atomically mark ``key`` in_progress. Returns False if refused."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                _CLAIM_SQL,
                {"key": key, "operation": operation, "now": now, "expires_at": expires_at},
            )
            return cursor.rowcount == 1

    def get(self, key: str) -> IdempotencyRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM idempotency_keys WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        return IdempotencyRecord(
            key=row["key"],
            operation=row["operation"],
            status=IdempotencyStatus(row["status"]),
            result=row["result"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            retry_count=row["retry_count"],
        )

    def complete(self, key: str, result: str, expires_at: float) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE idempotency_keys SET status = 'completed', result = ?, expires_at = ? WHERE key = ?",
                (result, expires_at, key),
            )

    def fail(self, key: str, expires_at: float) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE idempotency_keys SET status = 'failed', result = NULL, expires_at = ?, "
                "retry_count = retry_count + 1 WHERE key = ?",
                (expires_at, key),
            )

    def delete(self, key: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM idempotency_keys WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def delete_expired(self, now: float) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM idempotency_keys WHERE expires_at < ?", (now,))
            return cursor.rowcount

    def stats(self, now: float) -> dict[str, dict[str, float]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS count, AVG(retry_count) AS avg_retry_count "
                "FROM idempotency_keys WHERE expires_at >= ? GROUP BY status",
                (now,),
            ).fetchall()
        return {
            row["status"]: {"count": row["count"], "avg_retry_count": float(row["avg_retry_count"] or 0.0)}
            for row in rows
        }

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class IdempotencyManager:
    """Guard handler execution with an idempotency key."""

    def __init__(
        self,
        store: SQLiteIdempotencyStore | None = None,
        config: IdempotencyConfig | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Callable[[], float] = time.time,
        codec: ResultCodec | None = None,
    ) -> None:
        self._config = config or IdempotencyConfig()
        self._store = store or SQLiteIdempotencyStore(self._config.db_path)
        self._codec = codec or TaggedJSONCodec()
        self._metrics = metrics
        self._clock = clock
        self._cleanup_task: asyncio.Task | None = None

    @property
    def store(self) -> SQLiteIdempotencyStore:
        return self._store

    @staticmethod
    def generate_key(operation: str, context: OperationContext) -> str:
        """Deterministic key for an operation invocation.

        ``request_id`` and ``timestamp`` are left out so that a retried
        request with the same subject and payload maps to the same key.
        ``context.idempotency_key`` overrides the derived key.
        """
        if context.idempotency_key:
            return f"{operation}:{context.idempotency_key}"
        canonical = json.dumps(
            {"operation": operation, **context.identity()},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
        return f"{operation}:{digest}"

    async def execute_with_idempotency(
        self,
        key: str,
        operation: str,
        handler: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Run ``handler`` at most once per key while its record is live.

        Returns:
            The handler's result, or the cached result of a completed run.

        Raises:
            ConflictError: If another execution holds the key.
            ResultSerializationError: If the result cannot be cached; the key
                is released as failed.
        """
        ttl = self._config.default_ttl_seconds if ttl is None else ttl
        now = self._clock()

        claimed = await asyncio.to_thread(self._store.claim, key, operation, now, now + ttl)
        if not claimed:
            record = await asyncio.to_thread(self._store.get, key)
            if record is not None and record.status is IdempotencyStatus.COMPLETED:
                logger.debug(f"Idempotency cache hit for {key}")
                self._record_outcome(operation, "cache_hit")
                return self._decode(key, operation, record.result)
            self._record_outcome(operation, "conflict")
            raise ConflictError(key)

        logger.debug(f"Claimed idempotency key {key}")
        try:
            result = await handler()
        except asyncio.CancelledError:
            # Shielded so a second cancel cannot leave the key in_progress;
            # the store call stays off the event loop thread.
            await asyncio.shield(asyncio.to_thread(self._store.fail, key, self._failed_expiry()))
            self._record_outcome(operation, "failed")
            raise
        except Exception:
            await asyncio.to_thread(self._store.fail, key, self._failed_expiry())
            self._record_outcome(operation, "failed")
            raise

        try:
            serialized = self._codec.encode(result)
        except (TypeError, ValueError, RecursionError) as exc:
            logger.warning(f"Result of {operation} cannot be cached, releasing {key}: {exc}")
            await asyncio.to_thread(self._store.fail, key, self._failed_expiry())
            self._record_outcome(operation, "failed")
            raise ResultSerializationError(operation, exc) from exc

        await asyncio.to_thread(self._store.complete, key, serialized, self._clock() + ttl)
        self._record_outcome(operation, "executed")
        return result

    def _decode(self, key: str, operation: str, data: str | None) -> Any:
        if data is None:
            return None
        try:
            return self._codec.decode(data)
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning(f"Cached result for {key} cannot be restored: {exc}")
            raise ResultSerializationError(operation, exc) from exc

    def _failed_expiry(self) -> float:
        return self._clock() + self._config.failed_ttl_seconds

    async def get_record(self, key: str) -> IdempotencyRecord | None:
        """Live record for a key; expired records are reported as absent."""
        record = await asyncio.to_thread(self._store.get, key)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def clear(self, key: str) -> bool:
        """Operator reset for a key, e.g. one stuck in_progress after a crash."""
        removed = await asyncio.to_thread(self._store.delete, key)
        if removed:
            logger.info(f"Cleared idempotency key {key}")
        return removed

    async def cleanup_expired_keys(self) -> int:
        """Delete all expired records. Returns the number removed."""
        removed = await asyncio.to_thread(self._store.delete_expired, self._clock())
        if removed:
            logger.info(f"Removed {removed} expired idempotency keys")
        return removed

    async def get_stats(self) -> dict[str, dict[str, float]]:
        """Record counts and average retry count grouped by status."""
        return await asyncio.to_thread(self._store.stats, self._clock())

    def start_cleanup(self) -> None:
        """Start the recurring expiry sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_seconds)
            try:
                await self.cleanup_expired_keys()
            except sqlite3.Error as exc:
                logger.warning(f"Idempotency cleanup failed: {exc}")

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self._store.close()

    def _record_outcome(self, operation: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_idempotency_outcome(operation, outcome)
