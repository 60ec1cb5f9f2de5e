"""
Dead-letter storage for envelopes a consumer group gave up on.

The bus writes an entry when a handler has used up its delivery attempts
or raised a non-retryable error. One entry exists per (event, consumer
group): when a replayed envelope fails again the same entry is updated and
reopened. Operators list open entries, replay them through
``InMemoryEventBus.replay_dead_letter`` and eventually purge resolved ones;
nothing else ever deletes an entry.

Backends:
    InMemoryDLQRepository    tests and single-process runs
    SQLiteDLQRepository      aiosqlite connection
    PostgreSQLDLQRepository  SQLAlchemy AsyncEngine or AsyncConnection
"""

import asyncio
import contextlib
import traceback
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from fulfillment.clock import Clock, sortable_timestamp, utcnow
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_CONSUMER_GROUP,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_RETRY_COUNT,
)
from fulfillment.repositories._connection import execute_with_connection
from fulfillment.serialization import json_dumps, json_loads

# Column order shared by every SELECT and by _entry_from_row
_COLUMNS = """
    id, event_id, consumer_group, event_type, event_data,
    error_message, error_stacktrace, retry_count,
    first_failed_at, last_failed_at, status, resolved_at, resolved_by
"""


class DLQStatus(str, Enum):
    FAILED = "failed"
    RETRYING = "retrying"
    RESOLVED = "resolved"


OPEN_STATUSES = (DLQStatus.FAILED, DLQStatus.RETRYING)


def _format_error(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


@dataclass
class DLQEntry:
    """
    One dead-lettered envelope for one consumer group.

    ``event_data`` is the serialized envelope, as a JSON string (SQLite,
    in-memory) or already decoded (PostgreSQL JSONB); ``envelope_data()``
    returns it as a dict either way.
    """

    id: int | str
    event_id: UUID
    consumer_group: str
    event_type: str
    event_data: str | dict[str, Any]
    error_message: str
    error_stacktrace: str | None = None
    retry_count: int = 0
    first_failed_at: datetime | None = None
    last_failed_at: datetime | None = None
    status: DLQStatus = DLQStatus.FAILED
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    def envelope_data(self) -> dict[str, Any]:
        if isinstance(self.event_data, str):
            data: dict[str, Any] = json_loads(self.event_data)
            return data
        return self.event_data

    @property
    def partition_key(self) -> str | None:
        """Partition (order) the failed envelope belongs to."""
        return self.envelope_data().get("partition_key")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass(frozen=True)
class DLQStats:
    """
    Open dead letters at a glance.

    Attributes:
        total_failed: Entries waiting for an operator
        total_retrying: Entries currently being replayed
        affected_consumer_groups: Distinct groups with open entries
        oldest_failure: ISO timestamp of the oldest open entry
    """

    total_failed: int = 0
    total_retrying: int = 0
    affected_consumer_groups: int = 0
    oldest_failure: str | None = None


@runtime_checkable
class DLQRepository(Protocol):
    """Storage for dead-lettered envelopes."""

    async def add_failed_event(
        self,
        event_id: UUID,
        consumer_group: str,
        event_type: str,
        event_data: dict[str, Any],
        error: BaseException,
        retry_count: int = 0,
    ) -> None:
        """Create the entry, or update and reopen it if it already exists."""
        ...

    async def get_failed_events(
        self,
        consumer_group: str | None = None,
        status: str = "failed",
        limit: int = 100,
    ) -> list[DLQEntry]:
        """Entries in ``status``, newest first."""
        ...

    async def get_failed_event_by_id(self, dlq_id: int | str) -> DLQEntry | None: ...

    async def mark_retrying(self, dlq_id: int | str) -> None: ...

    async def mark_resolved(self, dlq_id: int | str, resolved_by: str | UUID) -> None: ...

    async def get_failure_stats(self) -> DLQStats: ...

    async def delete_resolved_events(self, older_than_days: int = 30) -> int:
        """Purge entries resolved more than ``older_than_days`` ago."""
        ...


class _TracedDLQ:
    """Tracer and clock plumbing shared by the DLQ backends."""

    db_system = ""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._clock = clock or utcnow
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @contextlib.contextmanager
    def _span(self, operation: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.span(
            f"fulfillment.dlq.{operation}",
            {**(attributes or {}), ATTR_DB_SYSTEM: self.db_system},
        ):
            yield

    @staticmethod
    def _failure_attributes(
        event_id: UUID,
        consumer_group: str,
        event_type: str,
        error: BaseException,
        retry_count: int,
    ) -> dict[str, Any]:
        return {
            ATTR_EVENT_ID: str(event_id),
            ATTR_EVENT_TYPE: event_type,
            ATTR_CONSUMER_GROUP: consumer_group,
            ATTR_ERROR_TYPE: type(error).__name__,
            ATTR_RETRY_COUNT: retry_count,
        }

    @staticmethod
    def _query_attributes(consumer_group: str | None, status: str, limit: int) -> dict[str, Any]:
        attributes: dict[str, Any] = {"limit": limit, "status_filter": str(DLQStatus(status).value)}
        if consumer_group:
            attributes[ATTR_CONSUMER_GROUP] = consumer_group
        return attributes


# =============================================================================
# In-memory
# =============================================================================


class InMemoryDLQRepository(_TracedDLQ):
    """
    DLQ kept in process memory.

    Entries are indexed both by (event_id, consumer_group), which is the
    upsert key, and by their integer ID for operator lookups.

    Example:
        >>> repo = InMemoryDLQRepository()
        >>> bus = InMemoryEventBus(dlq_repo=repo)
    """

    db_system = "memory"

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        *,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock=clock, tracer=tracer, enable_tracing=enable_tracing)
        self._by_key: dict[tuple[UUID, str], DLQEntry] = {}
        self._by_id: dict[str, DLQEntry] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def add_failed_event(
        self,
        event_id: UUID,
        consumer_group: str,
        event_type: str,
        event_data: dict[str, Any],
        error: BaseException,
        retry_count: int = 0,
    ) -> None:
        attributes = self._failure_attributes(
            event_id, consumer_group, event_type, error, retry_count
        )
        with self._span("add", attributes):
            now = self._clock()
            async with self._lock:
                entry = self._by_key.get((event_id, consumer_group))
                if entry is None:
                    entry = DLQEntry(
                        id=self._next_id,
                        event_id=event_id,
                        consumer_group=consumer_group,
                        event_type=event_type,
                        event_data=json_dumps(event_data),
                        error_message="",
                        first_failed_at=now,
                    )
                    self._next_id += 1
                    self._by_key[(event_id, consumer_group)] = entry
                    self._by_id[str(entry.id)] = entry

                entry.error_message = str(error)
                entry.error_stacktrace = _format_error(error)
                entry.retry_count = retry_count
                entry.last_failed_at = now
                entry.status = DLQStatus.FAILED
                entry.resolved_at = None
                entry.resolved_by = None

    async def get_failed_events(
        self,
        consumer_group: str | None = None,
        status: str = "failed",
        limit: int = 100,
    ) -> list[DLQEntry]:
        with self._span("get", self._query_attributes(consumer_group, status, limit)):
            wanted = DLQStatus(status)
            async with self._lock:
                entries = [
                    e
                    for e in self._by_id.values()
                    if e.status == wanted
                    and (consumer_group is None or e.consumer_group == consumer_group)
                ]
            entries.sort(key=lambda e: (e.first_failed_at, e.id), reverse=True)
            return entries[:limit]

    async def get_failed_event_by_id(self, dlq_id: int | str) -> DLQEntry | None:
        with self._span("get_by_id", {"dlq.id": str(dlq_id)}):
            return self._by_id.get(str(dlq_id))

    async def mark_retrying(self, dlq_id: int | str) -> None:
        with self._span("retry", {"dlq.id": str(dlq_id)}):
            async with self._lock:
                entry = self._by_id.get(str(dlq_id))
                if entry is not None:
                    entry.status = DLQStatus.RETRYING

    async def mark_resolved(self, dlq_id: int | str, resolved_by: str | UUID) -> None:
        with self._span("resolve", {"dlq.id": str(dlq_id), "resolved_by": str(resolved_by)}):
            async with self._lock:
                entry = self._by_id.get(str(dlq_id))
                if entry is not None:
                    entry.status = DLQStatus.RESOLVED
                    entry.resolved_at = self._clock()
                    entry.resolved_by = str(resolved_by)

    async def get_failure_stats(self) -> DLQStats:
        with self._span("get_stats"):
            async with self._lock:
                open_entries = [e for e in self._by_id.values() if e.is_open]
            if not open_entries:
                return DLQStats()
            oldest = min(e.first_failed_at for e in open_entries if e.first_failed_at)
            return DLQStats(
                total_failed=sum(e.status == DLQStatus.FAILED for e in open_entries),
                total_retrying=sum(e.status == DLQStatus.RETRYING for e in open_entries),
                affected_consumer_groups=len({e.consumer_group for e in open_entries}),
                oldest_failure=oldest.isoformat(),
            )

    async def delete_resolved_events(self, older_than_days: int = 30) -> int:
        with self._span("delete_resolved", {"older_than_days": older_than_days}):
            cutoff = self._clock() - timedelta(days=older_than_days)
            async with self._lock:
                purge = [
                    e
                    for e in self._by_id.values()
                    if e.status == DLQStatus.RESOLVED and e.resolved_at and e.resolved_at < cutoff
                ]
                for entry in purge:
                    del self._by_id[str(entry.id)]
                    del self._by_key[(entry.event_id, entry.consumer_group)]
            return len(purge)

    async def clear(self) -> None:
        async with self._lock:
            self._by_key.clear()
            self._by_id.clear()
            self._next_id = 1


# =============================================================================
# SQLite
# =============================================================================


class SQLiteDLQRepository(_TracedDLQ):
    """
    DLQ in the ``dead_letter_queue`` table of an aiosqlite database.

    Apply ``get_schema("dlq", backend="sqlite")`` first. UUIDs are stored
    as TEXT and timestamps as sortable ISO 8601 TEXT.

    Args:
        connection: Open aiosqlite connection; the repository commits after
            every write
        clock: Time source for failure and resolution timestamps
        tracer: Optional tracer
        enable_tracing: Whether to create OpenTelemetry spans
    """

    db_system = "sqlite"

    def __init__(
        self,
        connection: Any,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        *,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock=clock, tracer=tracer, enable_tracing=enable_tracing)
        self._connection = connection

    @staticmethod
    def _timestamp(value: str | None) -> datetime | None:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    def _entry_from_row(self, row: Any) -> DLQEntry:
        return DLQEntry(
            id=row[0],
            event_id=UUID(row[1]),
            consumer_group=row[2],
            event_type=row[3],
            event_data=row[4],
            error_message=row[5],
            error_stacktrace=row[6],
            retry_count=row[7],
            first_failed_at=self._timestamp(row[8]),
            last_failed_at=self._timestamp(row[9]),
            status=DLQStatus(row[10]),
            resolved_at=self._timestamp(row[11]),
            resolved_by=row[12],
        )

    async def _write(self, sql: str, params: tuple[Any, ...]) -> Any:
        cursor = await self._connection.execute(sql, params)
        await self._connection.commit()
        return cursor

    async def add_failed_event(
        self,
        event_id: UUID,
        consumer_group: str,
        event_type: str,
        event_data: dict[str, Any],
        error: BaseException,
        retry_count: int = 0,
    ) -> None:
        attributes = self._failure_attributes(
            event_id, consumer_group, event_type, error, retry_count
        )
        with self._span("add", attributes):
            now = sortable_timestamp(self._clock())
            await self._write(
                """
                INSERT INTO dead_letter_queue
                    (event_id, consumer_group, event_type, event_data,
                     error_message, error_stacktrace, retry_count,
                     first_failed_at, last_failed_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'failed')
                ON CONFLICT (event_id, consumer_group) DO UPDATE
                SET error_message = excluded.error_message,
                    error_stacktrace = excluded.error_stacktrace,
                    retry_count = excluded.retry_count,
                    last_failed_at = excluded.last_failed_at,
                    status = 'failed',
                    resolved_at = NULL,
                    resolved_by = NULL
                """,
                (
                    str(event_id),
                    consumer_group,
                    event_type,
                    json_dumps(event_data),
                    str(error),
                    _format_error(error),
                    retry_count,
                    now,
                    now,
                ),
            )

    async def get_failed_events(
        self,
        consumer_group: str | None = None,
        status: str = "failed",
        limit: int = 100,
    ) -> list[DLQEntry]:
        with self._span("get", self._query_attributes(consumer_group, status, limit)):
            sql = f"SELECT {_COLUMNS} FROM dead_letter_queue WHERE status = ?"  # nosec B608
            params: list[Any] = [DLQStatus(status).value]
            if consumer_group:
                sql += " AND consumer_group = ?"
                params.append(consumer_group)
            sql += " ORDER BY first_failed_at DESC, id DESC LIMIT ?"
            params.append(limit)

            cursor = await self._connection.execute(sql, params)
            return [self._entry_from_row(row) for row in await cursor.fetchall()]

    async def get_failed_event_by_id(self, dlq_id: int | str) -> DLQEntry | None:
        with self._span("get_by_id", {"dlq.id": str(dlq_id)}):
            cursor = await self._connection.execute(
                f"SELECT {_COLUMNS} FROM dead_letter_queue WHERE id = ?",  # nosec B608
                (int(dlq_id),),
            )
            row = await cursor.fetchone()
            return self._entry_from_row(row) if row else None

    async def mark_retrying(self, dlq_id: int | str) -> None:
        with self._span("retry", {"dlq.id": str(dlq_id)}):
            await self._write(
                "UPDATE dead_letter_queue SET status = 'retrying' WHERE id = ?", (int(dlq_id),)
            )

    async def mark_resolved(self, dlq_id: int | str, resolved_by: str | UUID) -> None:
        with self._span("resolve", {"dlq.id": str(dlq_id), "resolved_by": str(resolved_by)}):
            await self._write(
                """
                UPDATE dead_letter_queue
                SET status = 'resolved', resolved_at = ?, resolved_by = ?
                WHERE id = ?
                """,
                (sortable_timestamp(self._clock()), str(resolved_by), int(dlq_id)),
            )

    async def get_failure_stats(self) -> DLQStats:
        with self._span("get_stats"):
            cursor = await self._connection.execute(
                """
                SELECT
                    COALESCE(SUM(status = 'failed'), 0),
                    COALESCE(SUM(status = 'retrying'), 0),
                    COUNT(DISTINCT consumer_group),
                    MIN(first_failed_at)
                FROM dead_letter_queue
                WHERE status IN ('failed', 'retrying')
                """
            )
            row = await cursor.fetchone()
            if row is None:
                return DLQStats()
            return DLQStats(
                total_failed=row[0],
                total_retrying=row[1],
                affected_consumer_groups=row[2],
                oldest_failure=row[3],
            )

    async def delete_resolved_events(self, older_than_days: int = 30) -> int:
        with self._span("delete_resolved", {"older_than_days": older_than_days}):
            cutoff = sortable_timestamp(self._clock() - timedelta(days=older_than_days))
            cursor = await self._write(
                "DELETE FROM dead_letter_queue WHERE status = 'resolved' AND resolved_at < ?",
                (cutoff,),
            )
            deleted: int = cursor.rowcount
            return deleted


# =============================================================================
# PostgreSQL
# =============================================================================


class PostgreSQLDLQRepository(_TracedDLQ):
    """
    DLQ in the PostgreSQL ``dead_letter_queue`` table.

    Apply ``get_schema("dlq")`` first. Accepts an ``AsyncEngine`` (one
    transaction per write) or a caller-owned ``AsyncConnection``.

    Example:
        >>> repo = PostgreSQLDLQRepository(engine)
        >>> bus = InMemoryEventBus(dlq_repo=repo)
    """

    db_system = "postgresql"

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        *,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock=clock, tracer=tracer, enable_tracing=enable_tracing)
        self.conn = conn

    @staticmethod
    def _entry_from_row(row: Any) -> DLQEntry:
        return DLQEntry(
            id=row[0],
            event_id=row[1],
            consumer_group=row[2],
            event_type=row[3],
            event_data=row[4],
            error_message=row[5],
            error_stacktrace=row[6],
            retry_count=row[7],
            first_failed_at=row[8],
            last_failed_at=row[9],
            status=DLQStatus(row[10]),
            resolved_at=row[11],
            resolved_by=row[12],
        )

    async def add_failed_event(
        self,
        event_id: UUID,
        consumer_group: str,
        event_type: str,
        event_data: dict[str, Any],
        error: BaseException,
        retry_count: int = 0,
    ) -> None:
        attributes = self._failure_attributes(
            event_id, consumer_group, event_type, error, retry_count
        )
        with self._span("add", attributes):
            query = text("""
                INSERT INTO dead_letter_queue
                    (event_id, consumer_group, event_type, event_data,
                     error_message, error_stacktrace, retry_count,
                     first_failed_at, last_failed_at, status)
                VALUES (:event_id, :consumer_group, :event_type, :event_data,
                        :error_message, :error_stacktrace, :retry_count,
                        :now, :now, 'failed')
                ON CONFLICT (event_id, consumer_group) DO UPDATE
                SET error_message = EXCLUDED.error_message,
                    error_stacktrace = EXCLUDED.error_stacktrace,
                    retry_count = EXCLUDED.retry_count,
                    last_failed_at = EXCLUDED.last_failed_at,
                    status = 'failed',
                    resolved_at = NULL,
                    resolved_by = NULL
            """)
            params = {
                "event_id": event_id,
                "consumer_group": consumer_group,
                "event_type": event_type,
                "event_data": json_dumps(event_data),
                "error_message": str(error),
                "error_stacktrace": _format_error(error),
                "retry_count": retry_count,
                "now": self._clock(),
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get_failed_events(
        self,
        consumer_group: str | None = None,
        status: str = "failed",
        limit: int = 100,
    ) -> list[DLQEntry]:
        with self._span("get", self._query_attributes(consumer_group, status, limit)):
            filters = "status = :status"
            params: dict[str, Any] = {"status": DLQStatus(status).value, "limit": limit}
            if consumer_group:
                filters += " AND consumer_group = :consumer_group"
                params["consumer_group"] = consumer_group

            # filters are static strings; values are bound
            query = text(f"""
                SELECT {_COLUMNS}
                FROM dead_letter_queue
                WHERE {filters}
                ORDER BY first_failed_at DESC, id DESC
                LIMIT :limit
            """)  # nosec B608
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [self._entry_from_row(row) for row in rows]

    async def get_failed_event_by_id(self, dlq_id: int | str) -> DLQEntry | None:
        with self._span("get_by_id", {"dlq.id": str(dlq_id)}):
            query = text(f"SELECT {_COLUMNS} FROM dead_letter_queue WHERE id = :dlq_id")  # nosec B608
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"dlq_id": int(dlq_id)})
                row = result.fetchone()
            return self._entry_from_row(row) if row else None

    async def mark_retrying(self, dlq_id: int | str) -> None:
        with self._span("retry", {"dlq.id": str(dlq_id)}):
            query = text("UPDATE dead_letter_queue SET status = 'retrying' WHERE id = :dlq_id")
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, {"dlq_id": int(dlq_id)})

    async def mark_resolved(self, dlq_id: int | str, resolved_by: str | UUID) -> None:
        with self._span("resolve", {"dlq.id": str(dlq_id), "resolved_by": str(resolved_by)}):
            query = text("""
                UPDATE dead_letter_queue
                SET status = 'resolved', resolved_at = :now, resolved_by = :resolved_by
                WHERE id = :dlq_id
            """)
            params = {"now": self._clock(), "resolved_by": str(resolved_by), "dlq_id": int(dlq_id)}
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def get_failure_stats(self) -> DLQStats:
        with self._span("get_stats"):
            query = text("""
                SELECT
                    COUNT(*) FILTER (WHERE status = 'failed'),
                    COUNT(*) FILTER (WHERE status = 'retrying'),
                    COUNT(DISTINCT consumer_group),
                    MIN(first_failed_at)
                FROM dead_letter_queue
                WHERE status IN ('failed', 'retrying')
            """)
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                row = result.fetchone()
            if row is None:
                return DLQStats()
            return DLQStats(
                total_failed=row[0],
                total_retrying=row[1],
                affected_consumer_groups=row[2],
                oldest_failure=row[3].isoformat() if row[3] else None,
            )

    async def delete_resolved_events(self, older_than_days: int = 30) -> int:
        with self._span("delete_resolved", {"older_than_days": older_than_days}):
            query = text("""
                DELETE FROM dead_letter_queue
                WHERE status = 'resolved' AND resolved_at < :cutoff
                RETURNING id
            """)
            cutoff = self._clock() - timedelta(days=older_than_days)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"cutoff": cutoff})
                return len(result.fetchall())


__all__ = [
    "DLQEntry",
    "DLQRepository",
    "DLQStats",
    "DLQStatus",
    "InMemoryDLQRepository",
    "OPEN_STATUSES",
    "PostgreSQLDLQRepository",
    "SQLiteDLQRepository",
]
