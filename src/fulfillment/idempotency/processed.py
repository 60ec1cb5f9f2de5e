"""
Processed-event markers for deduplicating redelivered envelopes.

A consumer group records ``(consumer_group, event_id)`` once the side
effect of an envelope has committed. Redeliveries of the same envelope to
the same group are then skipped.

Marker lifecycle:
    absent --try_claim--> claimed --mark_processed--> processed --purge--> absent
                             |
                             +--release_claim--> absent

The claim closes the window between checking and marking: two handlers
racing on the same envelope cannot both pass ``try_claim``. A claim left
behind by a crashed worker becomes takeable again after ``claim_timeout``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from fulfillment.clock import Clock, utcnow
from fulfillment.clock import sortable_timestamp as _ts
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_CONSUMER_GROUP,
    ATTR_DB_SYSTEM,
    ATTR_DUPLICATE,
    ATTR_EVENT_ID,
)
from fulfillment.repositories._connection import execute_with_connection

DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=5)


@dataclass(frozen=True)
class ProcessedEventMarker:
    """
    Marker row for one envelope in one consumer group.

    Attributes:
        consumer_group: Consumer group that handled the envelope
        event_id: Envelope ID
        status: 'claimed' while the handler runs, 'processed' once committed
        claimed_at: When the current claim was taken
        processed_at: When the side effect committed
    """

    consumer_group: str
    event_id: UUID
    status: str
    claimed_at: datetime
    processed_at: datetime | None = None

    @property
    def is_processed(self) -> bool:
        return self.status == "processed"


@runtime_checkable
class ProcessedEventStore(Protocol):
    """Protocol for processed-event marker stores."""

    async def has_processed(self, consumer_group: str, event_id: UUID) -> bool:
        """True if the envelope's side effect has committed for this group."""
        ...

    async def try_claim(self, consumer_group: str, event_id: UUID) -> bool:
        """
        Atomically claim an envelope for processing.

        Returns:
            True only for the single caller that obtained the claim. False
            if the envelope is already processed or claimed by a live handler.
        """
        ...

    async def mark_processed(self, consumer_group: str, event_id: UUID) -> bool:
        """
        Atomically record that the envelope's side effect committed.

        Returns:
            True if this call created the processed marker, False if the
            envelope was already marked processed.
        """
        ...

    async def release_claim(self, consumer_group: str, event_id: UUID) -> None:
        """Drop an in-flight claim so a redelivery can process the envelope."""
        ...

    async def get_marker(self, consumer_group: str, event_id: UUID) -> ProcessedEventMarker | None:
        """Get the marker for an envelope, if any."""
        ...

    async def purge_expired(self, older_than: datetime) -> int:
        """
        Delete processed markers whose processed_at is before ``older_than``.

        Returns:
            Number of markers deleted
        """
        ...


class InMemoryProcessedEventStore:
    """
    In-memory processed-event store.

    Example:
        >>> store = InMemoryProcessedEventStore()
        >>> if await store.try_claim("payment-service", envelope.event_id):
        ...     await charge()
        ...     await store.mark_processed("payment-service", envelope.event_id)
    """

    def __init__(
        self,
        *,
        claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._claim_timeout = claim_timeout
        self._clock = clock or utcnow
        self._markers: dict[tuple[str, UUID], ProcessedEventMarker] = {}
        self._lock = asyncio.Lock()

    async def has_processed(self, consumer_group: str, event_id: UUID) -> bool:
        async with self._lock:
            marker = self._markers.get((consumer_group, event_id))
            return marker is not None and marker.is_processed

    async def try_claim(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.claim",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "memory",
            },
        ) as span:
            now = self._clock()
            key = (consumer_group, event_id)
            async with self._lock:
                existing = self._markers.get(key)
                if existing is not None and (
                    existing.is_processed or existing.claimed_at >= now - self._claim_timeout
                ):
                    if span:
                        span.set_attribute(ATTR_DUPLICATE, True)
                    return False
                self._markers[key] = ProcessedEventMarker(
                    consumer_group=consumer_group,
                    event_id=event_id,
                    status="claimed",
                    claimed_at=now,
                )
                return True

    async def mark_processed(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.mark",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            now = self._clock()
            key = (consumer_group, event_id)
            async with self._lock:
                existing = self._markers.get(key)
                if existing is not None and existing.is_processed:
                    return False
                self._markers[key] = ProcessedEventMarker(
                    consumer_group=consumer_group,
                    event_id=event_id,
                    status="processed",
                    claimed_at=existing.claimed_at if existing else now,
                    processed_at=now,
                )
                return True

    async def release_claim(self, consumer_group: str, event_id: UUID) -> None:
        async with self._lock:
            existing = self._markers.get((consumer_group, event_id))
            if existing is not None and not existing.is_processed:
                del self._markers[(consumer_group, event_id)]

    async def get_marker(self, consumer_group: str, event_id: UUID) -> ProcessedEventMarker | None:
        async with self._lock:
            return self._markers.get((consumer_group, event_id))

    async def purge_expired(self, older_than: datetime) -> int:
        with self._tracer.span(
            "fulfillment.processed_events.purge",
            {"older_than": older_than.isoformat(), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                expired = [
                    key
                    for key, marker in self._markers.items()
                    if marker.processed_at is not None and marker.processed_at < older_than
                ]
                for key in expired:
                    del self._markers[key]
                return len(expired)

    async def clear(self) -> None:
        """Clear all markers. Useful for test setup/teardown."""
        async with self._lock:
            self._markers.clear()


class SQLiteProcessedEventStore:
    """
    SQLite processed-event store backed by the ``processed_events`` table.

    Claims and marks are single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE``
    statements; the affected row count tells whether this caller won.
    """

    def __init__(
        self,
        connection: Any,
        *,
        claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Args:
            connection: aiosqlite database connection
            claim_timeout: Age after which an unfinished claim may be taken over
            clock: Source of the current time (UTC)
            tracer: Optional tracer (one is created if not provided)
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection
        self._claim_timeout = claim_timeout
        self._clock = clock or utcnow

    async def has_processed(self, consumer_group: str, event_id: UUID) -> bool:
        cursor = await self._connection.execute(
            """
            SELECT 1 FROM processed_events
            WHERE consumer_group = ? AND event_id = ? AND status = 'processed'
            """,
            (consumer_group, str(event_id)),
        )
        return await cursor.fetchone() is not None

    async def try_claim(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.claim",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            now = self._clock()
            cursor = await self._connection.execute(
                """
                INSERT INTO processed_events (consumer_group, event_id, status, claimed_at)
                VALUES (?, ?, 'claimed', ?)
                ON CONFLICT (consumer_group, event_id) DO UPDATE
                SET claimed_at = excluded.claimed_at
                WHERE processed_events.status = 'claimed'
                  AND processed_events.claimed_at < ?
                """,
                (consumer_group, str(event_id), _ts(now), _ts(now - self._claim_timeout)),
            )
            await self._connection.commit()
            return bool(cursor.rowcount == 1)

    async def mark_processed(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.mark",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            now = _ts(self._clock())
            cursor = await self._connection.execute(
                """
                INSERT INTO processed_events
                    (consumer_group, event_id, status, claimed_at, processed_at)
                VALUES (?, ?, 'processed', ?, ?)
                ON CONFLICT (consumer_group, event_id) DO UPDATE
                SET status = 'processed', processed_at = excluded.processed_at
                WHERE processed_events.status <> 'processed'
                """,
                (consumer_group, str(event_id), now, now),
            )
            await self._connection.commit()
            return bool(cursor.rowcount == 1)

    async def release_claim(self, consumer_group: str, event_id: UUID) -> None:
        await self._connection.execute(
            """
            DELETE FROM processed_events
            WHERE consumer_group = ? AND event_id = ? AND status = 'claimed'
            """,
            (consumer_group, str(event_id)),
        )
        await self._connection.commit()

    async def get_marker(self, consumer_group: str, event_id: UUID) -> ProcessedEventMarker | None:
        cursor = await self._connection.execute(
            """
            SELECT consumer_group, event_id, status, claimed_at, processed_at
            FROM processed_events
            WHERE consumer_group = ? AND event_id = ?
            """,
            (consumer_group, str(event_id)),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ProcessedEventMarker(
            consumer_group=row[0],
            event_id=UUID(row[1]),
            status=row[2],
            claimed_at=datetime.fromisoformat(row[3]),
            processed_at=datetime.fromisoformat(row[4]) if row[4] else None,
        )

    async def purge_expired(self, older_than: datetime) -> int:
        with self._tracer.span(
            "fulfillment.processed_events.purge",
            {"older_than": older_than.isoformat(), ATTR_DB_SYSTEM: "sqlite"},
        ):
            cursor = await self._connection.execute(
                """
                DELETE FROM processed_events
                WHERE status = 'processed' AND processed_at < ?
                """,
                (_ts(older_than),),
            )
            await self._connection.commit()
            rowcount: int = cursor.rowcount
            return rowcount


class PostgreSQLProcessedEventStore:
    """
    PostgreSQL processed-event store backed by the ``processed_events`` table.

    Example:
        >>> store = PostgreSQLProcessedEventStore(engine)
        >>> await store.try_claim("inventory-service", envelope.event_id)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._claim_timeout = claim_timeout
        self._clock = clock or utcnow

    async def has_processed(self, consumer_group: str, event_id: UUID) -> bool:
        query = text("""
            SELECT 1 FROM processed_events
            WHERE consumer_group = :consumer_group
              AND event_id = :event_id
              AND status = 'processed'
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(
                query, {"consumer_group": consumer_group, "event_id": event_id}
            )
            return result.fetchone() is not None

    async def try_claim(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.claim",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            now = self._clock()
            query = text("""
                INSERT INTO processed_events (consumer_group, event_id, status, claimed_at)
                VALUES (:consumer_group, :event_id, 'claimed', :now)
                ON CONFLICT (consumer_group, event_id) DO UPDATE
                SET claimed_at = EXCLUDED.claimed_at
                WHERE processed_events.status = 'claimed'
                  AND processed_events.claimed_at < :stale_before
                RETURNING event_id
            """)
            params = {
                "consumer_group": consumer_group,
                "event_id": event_id,
                "now": now,
                "stale_before": now - self._claim_timeout,
            }
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                return result.fetchone() is not None

    async def mark_processed(self, consumer_group: str, event_id: UUID) -> bool:
        with self._tracer.span(
            "fulfillment.processed_events.mark",
            {
                ATTR_CONSUMER_GROUP: consumer_group,
                ATTR_EVENT_ID: str(event_id),
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                INSERT INTO processed_events
                    (consumer_group, event_id, status, claimed_at, processed_at)
                VALUES (:consumer_group, :event_id, 'processed', :now, :now)
                ON CONFLICT (consumer_group, event_id) DO UPDATE
                SET status = 'processed', processed_at = EXCLUDED.processed_at
                WHERE processed_events.status <> 'processed'
                RETURNING event_id
            """)
            params = {"consumer_group": consumer_group, "event_id": event_id, "now": self._clock()}
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                return result.fetchone() is not None

    async def release_claim(self, consumer_group: str, event_id: UUID) -> None:
        query = text("""
            DELETE FROM processed_events
            WHERE consumer_group = :consumer_group
              AND event_id = :event_id
              AND status = 'claimed'
        """)
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(query, {"consumer_group": consumer_group, "event_id": event_id})

    async def get_marker(self, consumer_group: str, event_id: UUID) -> ProcessedEventMarker | None:
        query = text("""
            SELECT consumer_group, event_id, status, claimed_at, processed_at
            FROM processed_events
            WHERE consumer_group = :consumer_group AND event_id = :event_id
        """)
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(
                query, {"consumer_group": consumer_group, "event_id": event_id}
            )
            row = result.fetchone()
        if row is None:
            return None
        return ProcessedEventMarker(
            consumer_group=row[0],
            event_id=row[1],
            status=row[2],
            claimed_at=row[3],
            processed_at=row[4],
        )

    async def purge_expired(self, older_than: datetime) -> int:
        with self._tracer.span(
            "fulfillment.processed_events.purge",
            {"older_than": older_than.isoformat(), ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                DELETE FROM processed_events
                WHERE status = 'processed' AND processed_at < :older_than
                RETURNING event_id
            """)
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(query, {"older_than": older_than})
                return len(result.fetchall())


__all__ = [
    "DEFAULT_CLAIM_TIMEOUT",
    "ProcessedEventMarker",
    "ProcessedEventStore",
    "InMemoryProcessedEventStore",
    "SQLiteProcessedEventStore",
    "PostgreSQLProcessedEventStore",
]
