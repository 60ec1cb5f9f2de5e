"""
Idempotency keys for outbound commands.

Before a side effect with an external system (charging a card), the caller
reserves a deterministic key. A fresh reservation executes the action and
stores its result with ``complete_key``; any later reservation of the same
key returns the stored result without executing again.

Key lifecycle:
    absent --reserve_key--> pending --complete_key--> completed
                              |
                              +--release_key--> absent  (action failed transiently)

A pending key whose owner crashed becomes reservable again after
``pending_timeout``. The action is then re-executed with the same key, so
the external system must deduplicate on it too.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from fulfillment.clock import Clock, utcnow
from fulfillment.clock import sortable_timestamp as _ts
from fulfillment.exceptions import IdempotencyKeyInFlight
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import ATTR_DB_SYSTEM, ATTR_IDEMPOTENCY_KEY
from fulfillment.repositories._connection import execute_with_connection
from fulfillment.serialization import json_dumps, json_loads

DEFAULT_PENDING_TIMEOUT = timedelta(minutes=5)


@dataclass(frozen=True)
class KeyReservation:
    """
    Outcome of reserving an idempotency key.

    Attributes:
        key: The reserved key
        fresh: True if the caller owns the key and must execute the action
        result: Stored result of the earlier execution (when not fresh)
    """

    key: str
    fresh: bool
    result: dict[str, Any] | None = None


@runtime_checkable
class IdempotencyKeyStore(Protocol):
    """Protocol for idempotency key stores."""

    async def reserve_key(self, key: str) -> KeyReservation:
        """
        Reserve a key.

        Returns:
            A fresh reservation, or the stored result of a completed key

        Raises:
            IdempotencyKeyInFlight: The key is reserved and not yet completed
        """
        ...

    async def complete_key(self, key: str, result: dict[str, Any]) -> None:
        """Store the action's result and mark the key completed."""
        ...

    async def release_key(self, key: str) -> None:
        """Undo a pending reservation so the action can be attempted again."""
        ...

    async def get_result(self, key: str) -> dict[str, Any] | None:
        """Stored result for a completed key, or None."""
        ...


class InMemoryIdempotencyKeyStore:
    """
    In-memory idempotency key store.

    Example:
        >>> store = InMemoryIdempotencyKeyStore()
        >>> reservation = await store.reserve_key("payment:order-1:1")
        >>> if reservation.fresh:
        ...     result = await gateway.charge(...)
        ...     await store.complete_key(reservation.key, result)
    """

    def __init__(
        self,
        *,
        pending_timeout: timedelta = DEFAULT_PENDING_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._pending_timeout = pending_timeout
        self._clock = clock or utcnow
        # key -> (status, reserved_at, result)
        self._keys: dict[str, tuple[str, datetime, dict[str, Any] | None]] = {}
        self._lock = asyncio.Lock()

    async def reserve_key(self, key: str) -> KeyReservation:
        with self._tracer.span(
            "fulfillment.idempotency.reserve",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "memory"},
        ):
            now = self._clock()
            async with self._lock:
                existing = self._keys.get(key)
                if existing is None or (
                    existing[0] == "pending" and existing[1] < now - self._pending_timeout
                ):
                    self._keys[key] = ("pending", now, None)
                    return KeyReservation(key=key, fresh=True)

                status, _, result = existing
                if status == "completed":
                    return KeyReservation(key=key, fresh=False, result=result)
                raise IdempotencyKeyInFlight(key)

    async def complete_key(self, key: str, result: dict[str, Any]) -> None:
        with self._tracer.span(
            "fulfillment.idempotency.complete",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                existing = self._keys.get(key)
                reserved_at = existing[1] if existing else self._clock()
                # Round-trip through JSON so callers never share mutable state
                self._keys[key] = ("completed", reserved_at, json_loads(json_dumps(result)))

    async def release_key(self, key: str) -> None:
        async with self._lock:
            existing = self._keys.get(key)
            if existing is not None and existing[0] == "pending":
                del self._keys[key]

    async def get_result(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            existing = self._keys.get(key)
            if existing is None or existing[0] != "completed":
                return None
            return existing[2]


class SQLiteIdempotencyKeyStore:
    """SQLite idempotency key store backed by the ``idempotency_keys`` table."""

    def __init__(
        self,
        connection: Any,
        *,
        pending_timeout: timedelta = DEFAULT_PENDING_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._pending_timeout = pending_timeout
        self._clock = clock or utcnow

    async def reserve_key(self, key: str) -> KeyReservation:
        with self._tracer.span(
            "fulfillment.idempotency.reserve",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "sqlite"},
        ):
            now = self._clock()
            cursor = await self._connection.execute(
                """
                INSERT INTO idempotency_keys (key, status, reserved_at)
                VALUES (?, 'pending', ?)
                ON CONFLICT (key) DO UPDATE
                SET reserved_at = excluded.reserved_at
                WHERE idempotency_keys.status = 'pending'
                  AND idempotency_keys.reserved_at < ?
                """,
                (key, _ts(now), _ts(now - self._pending_timeout)),
            )
            await self._connection.commit()
            if cursor.rowcount == 1:
                return KeyReservation(key=key, fresh=True)

            cursor = await self._connection.execute(
                "SELECT status, result FROM idempotency_keys WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
            if row is not None and row[0] == "completed":
                return KeyReservation(
                    key=key,
                    fresh=False,
                    result=json_loads(row[1]) if row[1] else None,
                )
            raise IdempotencyKeyInFlight(key)

    async def complete_key(self, key: str, result: dict[str, Any]) -> None:
        with self._tracer.span(
            "fulfillment.idempotency.complete",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "sqlite"},
        ):
            now = _ts(self._clock())
            await self._connection.execute(
                """
                INSERT INTO idempotency_keys (key, status, result, reserved_at, completed_at)
                VALUES (?, 'completed', ?, ?, ?)
                ON CONFLICT (key) DO UPDATE
                SET status = 'completed',
                    result = excluded.result,
                    completed_at = excluded.completed_at
                """,
                (key, json_dumps(result), now, now),
            )
            await self._connection.commit()

    async def release_key(self, key: str) -> None:
        await self._connection.execute(
            "DELETE FROM idempotency_keys WHERE key = ? AND status = 'pending'",
            (key,),
        )
        await self._connection.commit()

    async def get_result(self, key: str) -> dict[str, Any] | None:
        cursor = await self._connection.execute(
            "SELECT result FROM idempotency_keys WHERE key = ? AND status = 'completed'",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        result: dict[str, Any] = json_loads(row[0])
        return result


class PostgreSQLIdempotencyKeyStore:
    """PostgreSQL idempotency key store backed by the ``idempotency_keys`` table."""

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        pending_timeout: timedelta = DEFAULT_PENDING_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._pending_timeout = pending_timeout
        self._clock = clock or utcnow

    @staticmethod
    def _decode(value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        if isinstance(value, (str, bytes)):
            decoded: dict[str, Any] = json_loads(value)
            return decoded
        return dict(value)

    async def reserve_key(self, key: str) -> KeyReservation:
        with self._tracer.span(
            "fulfillment.idempotency.reserve",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            now = self._clock()
            reserve = text("""
                INSERT INTO idempotency_keys (key, status, reserved_at)
                VALUES (:key, 'pending', :now)
                ON CONFLICT (key) DO UPDATE
                SET reserved_at = EXCLUDED.reserved_at
                WHERE idempotency_keys.status = 'pending'
                  AND idempotency_keys.reserved_at < :stale_before
                RETURNING key
            """)
            lookup = text("SELECT status, result FROM idempotency_keys WHERE key = :key")

            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    reserve,
                    {"key": key, "now": now, "stale_before": now - self._pending_timeout},
                )
                if result.fetchone() is not None:
                    return KeyReservation(key=key, fresh=True)

                row = (await conn.execute(lookup, {"key": key})).fetchone()

            if row is not None and row[0] == "completed":
                return KeyReservation(key=key, fresh=False, result=self._decode(row[1]))
            raise IdempotencyKeyInFlight(key)

    async def complete_key(self, key: str, result: dict[str, Any]) -> None:
        with self._tracer.span(
            "fulfillment.idempotency.complete",
            {ATTR_IDEMPOTENCY_KEY: key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                INSERT INTO idempotency_keys (key, status, result, reserved_at, completed_at)
                VALUES (:key, 'completed', :result, :now, :now)
                ON CONFLICT (key) DO UPDATE
                SET status = 'completed',
                    result = EXCLUDED.result,
                    completed_at = EXCLUDED.completed_at
            """)
            params = {"key": key, "result": json_dumps(result), "now": self._clock()}
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def release_key(self, key: str) -> None:
        query = text("DELETE FROM idempotency_keys WHERE key = :key AND status = 'pending'")
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, {"key": key})

    async def get_result(self, key: str) -> dict[str, Any] | None:
        query = text(
            "SELECT result FROM idempotency_keys WHERE key = :key AND status = 'completed'"
        )
        async with execute_with_connection(self.conn, transactional=False) as conn:
            row = (await conn.execute(query, {"key": key})).fetchone()
        return self._decode(row[0]) if row else None


__all__ = [
    "DEFAULT_PENDING_TIMEOUT",
    "KeyReservation",
    "IdempotencyKeyStore",
    "InMemoryIdempotencyKeyStore",
    "SQLiteIdempotencyKeyStore",
    "PostgreSQLIdempotencyKeyStore",
]
