"""
Unit tests for processed-event stores.

The in-memory and SQLite stores run through the same behavioral tests;
the PostgreSQL store is checked against a mocked connection.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import aiosqlite
import pytest
import pytest_asyncio

from fulfillment.clock import ManualClock
from fulfillment.idempotency import (
    InMemoryProcessedEventStore,
    PostgreSQLProcessedEventStore,
    SQLiteProcessedEventStore,
)
from fulfillment.observability import MockTracer

GROUP = "inventory-service"

# =============================================================================
# Fixtures
# =============================================================================


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, clock: ManualClock, sqlite_connection: aiosqlite.Connection):
    """Processed-event store with a one minute claim timeout."""
    if request.param == "memory":
        return InMemoryProcessedEventStore(
            claim_timeout=timedelta(minutes=1), clock=clock, enable_tracing=False
        )
    return SQLiteProcessedEventStore(
        sqlite_connection, claim_timeout=timedelta(minutes=1), clock=clock, enable_tracing=False
    )


# =============================================================================
# Claims and markers
# =============================================================================


class TestClaimAndMark:
    """Tests for the claim / mark / release protocol."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, store) -> None:
        event_id = uuid4()

        assert await store.try_claim(GROUP, event_id) is True
        assert await store.try_claim(GROUP, event_id) is False
        assert await store.has_processed(GROUP, event_id) is False

    @pytest.mark.asyncio
    async def test_claims_are_per_group(self, store) -> None:
        event_id = uuid4()

        assert await store.try_claim(GROUP, event_id) is True
        assert await store.try_claim("payment-service", event_id) is True

    @pytest.mark.asyncio
    async def test_processed_event_cannot_be_claimed(self, store) -> None:
        event_id = uuid4()
        await store.try_claim(GROUP, event_id)

        assert await store.mark_processed(GROUP, event_id) is True
        assert await store.has_processed(GROUP, event_id) is True
        assert await store.try_claim(GROUP, event_id) is False

    @pytest.mark.asyncio
    async def test_mark_twice_reports_duplicate(self, store) -> None:
        event_id = uuid4()

        assert await store.mark_processed(GROUP, event_id) is True
        assert await store.mark_processed(GROUP, event_id) is False

    @pytest.mark.asyncio
    async def test_release_allows_reclaim(self, store) -> None:
        """A failed handler releases its claim so redelivery can run it."""
        event_id = uuid4()
        await store.try_claim(GROUP, event_id)

        await store.release_claim(GROUP, event_id)

        assert await store.get_marker(GROUP, event_id) is None
        assert await store.try_claim(GROUP, event_id) is True

    @pytest.mark.asyncio
    async def test_release_keeps_processed_marker(self, store) -> None:
        event_id = uuid4()
        await store.mark_processed(GROUP, event_id)

        await store.release_claim(GROUP, event_id)

        assert await store.has_processed(GROUP, event_id) is True

    @pytest.mark.asyncio
    async def test_stale_claim_taken_over(self, store, clock: ManualClock) -> None:
        """A claim left by a crashed worker expires after the claim timeout."""
        event_id = uuid4()
        await store.try_claim(GROUP, event_id)

        clock.advance(timedelta(seconds=30))
        assert await store.try_claim(GROUP, event_id) is False

        clock.advance(timedelta(seconds=31))
        assert await store.try_claim(GROUP, event_id) is True

    @pytest.mark.asyncio
    async def test_marker_fields(self, store, clock: ManualClock) -> None:
        event_id = uuid4()
        await store.try_claim(GROUP, event_id)
        claimed = await store.get_marker(GROUP, event_id)

        clock.advance(5)
        await store.mark_processed(GROUP, event_id)
        marker = await store.get_marker(GROUP, event_id)

        assert claimed is not None
        assert claimed.status == "claimed"
        assert claimed.is_processed is False
        assert marker is not None
        assert marker.is_processed is True
        assert marker.event_id == event_id
        assert marker.consumer_group == GROUP
        assert marker.processed_at == clock()
        assert marker.claimed_at == claimed.claimed_at


# =============================================================================
# Retention
# =============================================================================


class TestPurge:
    """Tests for purge_expired."""

    @pytest.mark.asyncio
    async def test_purges_old_processed_markers(self, store, clock: ManualClock) -> None:
        old, recent, claimed = uuid4(), uuid4(), uuid4()
        await store.mark_processed(GROUP, old)
        clock.advance(timedelta(days=2))
        await store.mark_processed(GROUP, recent)
        await store.try_claim(GROUP, claimed)

        purged = await store.purge_expired(clock() - timedelta(days=1))

        assert purged == 1
        assert await store.has_processed(GROUP, old) is False
        assert await store.has_processed(GROUP, recent) is True
        assert await store.get_marker(GROUP, claimed) is not None


# =============================================================================
# Tracing
# =============================================================================


class TestTracing:
    @pytest.mark.asyncio
    async def test_duplicate_claim_span(self, clock: ManualClock) -> None:
        tracer = MockTracer()
        store = InMemoryProcessedEventStore(clock=clock, tracer=tracer)
        event_id = uuid4()

        await store.try_claim(GROUP, event_id)
        await store.mark_processed(GROUP, event_id)

        assert tracer.span_names == [
            "fulfillment.processed_events.claim",
            "fulfillment.processed_events.mark",
        ]

    @pytest.mark.asyncio
    async def test_clear(self, processed: InMemoryProcessedEventStore) -> None:
        event_id = uuid4()
        await processed.mark_processed(GROUP, event_id)

        await processed.clear()

        assert await processed.has_processed(GROUP, event_id) is False


# =============================================================================
# PostgreSQL
# =============================================================================


def _connection(row: tuple | None) -> MagicMock:
    result = MagicMock()
    result.fetchone.return_value = row
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=result)
    return conn


class TestPostgreSQLProcessedEventStore:
    """Tests for the PostgreSQL store against a mocked connection."""

    @pytest.mark.asyncio
    async def test_claim_won_when_row_returned(self, clock: ManualClock) -> None:
        event_id = uuid4()
        conn = _connection((event_id,))
        store = PostgreSQLProcessedEventStore(
            conn, claim_timeout=timedelta(minutes=1), clock=clock, enable_tracing=False
        )

        assert await store.try_claim(GROUP, event_id) is True

        params = conn.execute.call_args.args[1]
        assert params["consumer_group"] == GROUP
        assert params["event_id"] == event_id
        assert params["stale_before"] == clock() - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_claim_lost_when_no_row(self, clock: ManualClock) -> None:
        store = PostgreSQLProcessedEventStore(_connection(None), clock=clock, enable_tracing=False)

        assert await store.try_claim(GROUP, uuid4()) is False

    @pytest.mark.asyncio
    async def test_mark_processed(self, clock: ManualClock) -> None:
        event_id = uuid4()
        conn = _connection((event_id,))
        store = PostgreSQLProcessedEventStore(conn, clock=clock, enable_tracing=False)

        assert await store.mark_processed(GROUP, event_id) is True
        assert "RETURNING event_id" in str(conn.execute.call_args.args[0])
