"""
Shared pytest fixtures for the fulfillment saga tests.

This module provides:
- A manual clock and a fast retry policy
- Sample addresses, line items and order commands
- In-memory stores, bus and services wired to the manual clock
- SQLite connections with the saga schema applied
- A fully wired FulfillmentSaga with stock on hand
"""

from collections.abc import AsyncGenerator
from decimal import Decimal
from uuid import uuid4

import aiosqlite
import pytest
import pytest_asyncio

from fulfillment.bus import InMemoryEventBus
from fulfillment.clock import ManualClock
from fulfillment.config import SagaConfig
from fulfillment.events import EventEnvelope, OrderCreated
from fulfillment.idempotency import InMemoryIdempotencyKeyStore, InMemoryProcessedEventStore
from fulfillment.inventory import ReservationManager
from fulfillment.locks import KeyedLockManager
from fulfillment.migrations import get_schema
from fulfillment.observability import MockTracer
from fulfillment.orders import CreateOrder
from fulfillment.repositories import InMemoryDLQRepository
from fulfillment.retry import RetryConfig
from fulfillment.saga import FulfillmentSaga
from fulfillment.types import Address, LineItem

# =============================================================================
# Time and retry
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Clock starting at 2024-01-01T00:00:00Z."""
    return ManualClock()


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy with millisecond backoff and no jitter."""
    return RetryConfig(max_attempts=3, initial_delay=0.001, max_delay=0.005, jitter=0.0)


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def address() -> Address:
    return Address(line1="1 Main St", city="Springfield", postal_code="12345", country="US")


@pytest.fixture
def items() -> list[LineItem]:
    """Two SKU-A at 10.00 and one SKU-B at 5.50 (total 25.50)."""
    return [
        LineItem(product_id="SKU-A", quantity=2, unit_price=Decimal("10.00")),
        LineItem(product_id="SKU-B", quantity=1, unit_price=Decimal("5.50")),
    ]


@pytest.fixture
def create_command(address: Address, items: list[LineItem]) -> CreateOrder:
    return CreateOrder(
        user_id="user-1",
        items=items,
        shipping_address=address,
        billing_address=address,
    )


@pytest.fixture
def order_created_envelope(address: Address, items: list[LineItem]) -> EventEnvelope:
    """An order.created envelope for a fresh order."""
    order_id = uuid4()
    return EventEnvelope.wrap(
        OrderCreated(
            order_id=order_id,
            user_id="user-1",
            items=tuple(items),
            total=Decimal("25.50"),
            currency="USD",
            reservation_id=uuid4(),
            shipping_address=address,
            billing_address=address,
        ),
        partition_key=str(order_id),
        correlation_id=order_id,
    )


# =============================================================================
# In-memory components
# =============================================================================


@pytest.fixture
def dlq_repo() -> InMemoryDLQRepository:
    return InMemoryDLQRepository()


@pytest_asyncio.fixture
async def bus(
    dlq_repo: InMemoryDLQRepository, fast_retry: RetryConfig
) -> AsyncGenerator[InMemoryEventBus, None]:
    """Event bus with fast retries, shut down after the test."""
    event_bus = InMemoryEventBus(
        dlq_repo=dlq_repo,
        retry_config=fast_retry,
        handler_timeout=2.0,
        enable_tracing=False,
    )
    yield event_bus
    await event_bus.shutdown(timeout=1.0)


@pytest.fixture
def processed(clock: ManualClock) -> InMemoryProcessedEventStore:
    return InMemoryProcessedEventStore(clock=clock, enable_tracing=False)


@pytest.fixture
def keys(clock: ManualClock) -> InMemoryIdempotencyKeyStore:
    return InMemoryIdempotencyKeyStore(clock=clock, enable_tracing=False)


@pytest.fixture
def manager(clock: ManualClock) -> ReservationManager:
    """Reservation manager with a 15 minute default TTL."""
    return ReservationManager(
        clock=clock,
        locks=KeyedLockManager(enable_tracing=False),
        lock_timeout=1.0,
        enable_tracing=False,
    )


# =============================================================================
# SQLite
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """In-memory SQLite database with every saga table created."""
    async with aiosqlite.connect(":memory:") as db:
        await db.executescript(get_schema("all", backend="sqlite"))
        await db.commit()
        yield db


# =============================================================================
# Whole saga
# =============================================================================


@pytest.fixture
def saga_config(fast_retry: RetryConfig) -> SagaConfig:
    return SagaConfig(
        handler_timeout=2.0,
        db_timeout=1.0,
        gateway_timeout=1.0,
        retry=fast_retry,
    )


@pytest_asyncio.fixture
async def saga(
    saga_config: SagaConfig, clock: ManualClock
) -> AsyncGenerator[FulfillmentSaga, None]:
    """Started saga with 10 SKU-A and 10 SKU-B in warehouse wh-1."""
    async with FulfillmentSaga(config=saga_config, clock=clock, enable_tracing=False) as s:
        await s.inventory.set_stock("SKU-A", "wh-1", 10)
        await s.inventory.set_stock("SKU-B", "wh-1", 10)
        yield s
