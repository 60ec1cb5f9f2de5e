"""
Unit tests for ReservationManager.

Tests cover:
- Stock counters
- All-or-nothing reservation across warehouses
- Finalize, release and restock
- Expiry: lazy expiry on contention, finalize after expiry and sweeping
- Concurrent reservations never oversell
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from fulfillment.clock import ManualClock
from fulfillment.exceptions import InsufficientStock, ReservationExpired, ReservationNotFound
from fulfillment.inventory import ReservationManager, ReservationStatus
from fulfillment.observability import MockTracer
from fulfillment.types import LineItem

# =============================================================================
# Stock counters
# =============================================================================


class TestStock:
    """Tests for stock counters."""

    @pytest.mark.asyncio
    async def test_set_and_add_stock(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        level = await manager.add_stock("SKU-A", "wh-1", 3)

        assert level.on_hand == 8
        assert level.reserved == 0
        assert level.available == 8
        assert await manager.get_stock("SKU-A", "wh-1") == level

    @pytest.mark.asyncio
    async def test_available_sums_warehouses(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 2)
        await manager.set_stock("SKU-A", "wh-2", 3)
        await manager.set_stock("SKU-B", "wh-1", 7)

        assert await manager.available("SKU-A") == 5
        assert [level.warehouse_id for level in await manager.list_stock("SKU-A")] == [
            "wh-1",
            "wh-2",
        ]
        assert len(await manager.list_stock()) == 3

    @pytest.mark.asyncio
    async def test_unknown_sku(self, manager: ReservationManager) -> None:
        assert await manager.get_stock("SKU-X", "wh-1") is None
        assert await manager.available("SKU-X") == 0

    @pytest.mark.asyncio
    async def test_negative_stock_rejected(self, manager: ReservationManager) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            await manager.set_stock("SKU-A", "wh-1", -1)

    @pytest.mark.asyncio
    async def test_cannot_drop_below_reserved(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        await manager.reserve(uuid4(), {"SKU-A": 4})

        with pytest.raises(ValueError, match="reserved"):
            await manager.set_stock("SKU-A", "wh-1", 3)

    @pytest.mark.asyncio
    async def test_add_stock_requires_positive(self, manager: ReservationManager) -> None:
        with pytest.raises(ValueError):
            await manager.add_stock("SKU-A", "wh-1", 0)


# =============================================================================
# Reserve
# =============================================================================


class TestReserve:
    """Tests for reserve."""

    @pytest.mark.asyncio
    async def test_reserve_holds_stock(self, manager: ReservationManager, clock: ManualClock) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()

        reservation = await manager.reserve(order_id, {"SKU-A": 2})

        assert reservation.order_id == order_id
        assert reservation.status == ReservationStatus.ACTIVE
        assert reservation.expires_at == clock() + timedelta(minutes=15)
        assert reservation.quantity_of("SKU-A") == 2
        assert await manager.available("SKU-A") == 3
        assert await manager.reserved_quantity("SKU-A") == 2

    @pytest.mark.asyncio
    async def test_reserve_from_line_items(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        await manager.set_stock("SKU-A:red", "wh-1", 5)
        items = [
            LineItem(product_id="SKU-A", quantity=1, unit_price=Decimal("1")),
            LineItem(product_id="SKU-A", quantity=2, unit_price=Decimal("1")),
            LineItem(product_id="SKU-A", variant_id="red", quantity=1, unit_price=Decimal("1")),
        ]

        reservation = await manager.reserve(uuid4(), items)

        assert reservation.quantity_of("SKU-A") == 3
        assert reservation.quantity_of("SKU-A:red") == 1

    @pytest.mark.asyncio
    async def test_split_across_warehouses(self, manager: ReservationManager) -> None:
        """Quantities are drawn from warehouses in warehouse-id order."""
        await manager.set_stock("SKU-A", "wh-2", 5)
        await manager.set_stock("SKU-A", "wh-1", 2)

        reservation = await manager.reserve(uuid4(), {"SKU-A": 4})

        assert [(i.warehouse_id, i.quantity) for i in reservation.items] == [
            ("wh-1", 2),
            ("wh-2", 2),
        ]
        assert (await manager.get_stock("SKU-A", "wh-1")).available == 0

    @pytest.mark.asyncio
    async def test_insufficient_stock_holds_nothing(self, manager: ReservationManager) -> None:
        """A reservation is all-or-nothing across SKUs."""
        await manager.set_stock("SKU-A", "wh-1", 5)
        await manager.set_stock("SKU-B", "wh-1", 1)
        order_id = uuid4()

        with pytest.raises(InsufficientStock) as exc_info:
            await manager.reserve(order_id, {"SKU-A": 2, "SKU-B": 3})

        assert exc_info.value.sku == "SKU-B"
        assert exc_info.value.requested == 3
        assert exc_info.value.available == 1
        assert await manager.available("SKU-A") == 5
        assert await manager.get_reservation(order_id) is None

    @pytest.mark.asyncio
    async def test_unstocked_sku(self, manager: ReservationManager) -> None:
        with pytest.raises(InsufficientStock):
            await manager.reserve(uuid4(), {"SKU-X": 1})

    @pytest.mark.asyncio
    async def test_reserve_again_returns_existing(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()

        first = await manager.reserve(order_id, {"SKU-A": 2})
        second = await manager.reserve(order_id, {"SKU-A": 2})

        assert second == first
        assert await manager.available("SKU-A") == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("items", [{}, {"SKU-A": 0}])
    async def test_invalid_requests(self, manager: ReservationManager, items: dict) -> None:
        with pytest.raises(ValueError):
            await manager.reserve(uuid4(), items)

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)

        with pytest.raises(ValueError, match="ttl"):
            await manager.reserve(uuid4(), {"SKU-A": 1}, ttl=timedelta(0))

    @pytest.mark.asyncio
    async def test_records_correlation_id(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        correlation_id = uuid4()

        reservation = await manager.reserve(uuid4(), {"SKU-A": 1}, correlation_id=correlation_id)

        assert reservation.correlation_id == correlation_id

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_oversell(
        self, manager: ReservationManager
    ) -> None:
        """Ten orders racing for five units: exactly five succeed."""
        await manager.set_stock("SKU-A", "wh-1", 5)

        results = await asyncio.gather(
            *(manager.reserve(uuid4(), {"SKU-A": 1}) for _ in range(10)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InsufficientStock)) == 5
        level = await manager.get_stock("SKU-A", "wh-1")
        assert level.reserved == 5
        assert level.available == 0

    @pytest.mark.asyncio
    async def test_span(self, clock: ManualClock) -> None:
        tracer = MockTracer()
        manager = ReservationManager(clock=clock, tracer=tracer)
        await manager.set_stock("SKU-A", "wh-1", 1)

        await manager.reserve(uuid4(), {"SKU-A": 1})

        assert "fulfillment.inventory.reserve" in tracer.span_names


# =============================================================================
# Expiry
# =============================================================================


class TestExpiry:
    """Tests for reservation expiry."""

    @pytest.mark.asyncio
    async def test_expired_hold_released_for_contending_order(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        """An expired hold never blocks another order's reservation."""
        await manager.set_stock("SKU-A", "wh-1", 1)
        first = uuid4()
        await manager.reserve(first, {"SKU-A": 1}, ttl=timedelta(seconds=1))

        clock.advance(2)
        reservation = await manager.reserve(uuid4(), {"SKU-A": 1})

        assert reservation.status == ReservationStatus.ACTIVE
        expired = await manager.get_reservation(first)
        assert expired.status == ReservationStatus.RELEASED
        assert expired.expired_by_timeout

    @pytest.mark.asyncio
    async def test_expiry_is_at_expires_at(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        await manager.set_stock("SKU-A", "wh-1", 1)
        reservation = await manager.reserve(uuid4(), {"SKU-A": 1}, ttl=timedelta(seconds=10))

        assert not reservation.is_expired(clock.advance(9.999))
        assert reservation.is_expired(clock.advance(0.001))

    @pytest.mark.asyncio
    async def test_reserve_after_own_expiry_reallocates(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        await manager.set_stock("SKU-A", "wh-1", 2)
        order_id = uuid4()
        first = await manager.reserve(order_id, {"SKU-A": 1}, ttl=timedelta(seconds=1))

        clock.advance(2)
        second = await manager.reserve(order_id, {"SKU-A": 1})

        assert second.reservation_id != first.reservation_id
        assert await manager.reserved_quantity("SKU-A") == 1

    @pytest.mark.asyncio
    async def test_sweep_releases_and_reports(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        await manager.set_stock("SKU-A", "wh-1", 3)
        stale, fresh = uuid4(), uuid4()
        await manager.reserve(stale, {"SKU-A": 1}, ttl=timedelta(seconds=1))
        await manager.reserve(fresh, {"SKU-A": 1}, ttl=timedelta(minutes=5))

        clock.advance(2)
        swept = await manager.sweep_expired()

        assert [r.order_id for r in swept] == [stale]
        assert swept[0].release_reason == "expired"
        assert await manager.reserved_quantity("SKU-A") == 1
        assert await manager.sweep_expired() == []

    @pytest.mark.asyncio
    async def test_sweep_reports_lazily_expired(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        """Holds expired by other operations are still announced by the next sweep."""
        await manager.set_stock("SKU-A", "wh-1", 1)
        first = uuid4()
        await manager.reserve(first, {"SKU-A": 1}, ttl=timedelta(seconds=1))
        clock.advance(2)
        await manager.reserve(uuid4(), {"SKU-A": 1})

        swept = await manager.sweep_expired()

        assert [r.order_id for r in swept] == [first]

    @pytest.mark.asyncio
    async def test_requeue_expired(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        await manager.set_stock("SKU-A", "wh-1", 1)
        await manager.reserve(uuid4(), {"SKU-A": 1}, ttl=timedelta(seconds=1))
        clock.advance(2)
        swept = await manager.sweep_expired()

        manager.requeue_expired(swept)

        assert await manager.sweep_expired() == swept


# =============================================================================
# Finalize, release, restock
# =============================================================================


class TestFinalize:
    """Tests for finalize."""

    @pytest.mark.asyncio
    async def test_finalize_decrements_on_hand(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})

        fulfilled = await manager.finalize(order_id)

        assert fulfilled.status == ReservationStatus.FULFILLED
        assert fulfilled.fulfilled_at == clock()
        level = await manager.get_stock("SKU-A", "wh-1")
        assert (level.on_hand, level.reserved) == (3, 0)

    @pytest.mark.asyncio
    async def test_finalize_twice_is_noop(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})

        first = await manager.finalize(order_id)
        second = await manager.finalize(order_id)

        assert second == first
        assert (await manager.get_stock("SKU-A", "wh-1")).on_hand == 3

    @pytest.mark.asyncio
    async def test_finalize_after_expiry(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        """An expired hold is released and the caller takes the compensating path."""
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2}, ttl=timedelta(seconds=1))

        clock.advance(2)
        with pytest.raises(ReservationExpired):
            await manager.finalize(order_id)

        assert await manager.available("SKU-A") == 5
        assert (await manager.get_stock("SKU-A", "wh-1")).on_hand == 5
        with pytest.raises(ReservationExpired):
            await manager.finalize(order_id)

    @pytest.mark.asyncio
    async def test_finalize_missing(self, manager: ReservationManager) -> None:
        with pytest.raises(ReservationNotFound):
            await manager.finalize(uuid4())

    @pytest.mark.asyncio
    async def test_finalize_released(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})
        await manager.release(order_id, reason="order_cancelled")

        with pytest.raises(ReservationNotFound):
            await manager.finalize(order_id)


class TestRelease:
    """Tests for release and restock."""

    @pytest.mark.asyncio
    async def test_release_returns_stock(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})

        released = await manager.release(order_id, reason="payment_failed")

        assert released.status == ReservationStatus.RELEASED
        assert released.release_reason == "payment_failed"
        assert await manager.available("SKU-A") == 5

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})

        first = await manager.release(order_id)
        second = await manager.release(order_id)

        assert second == first
        assert await manager.available("SKU-A") == 5
        assert (await manager.get_stock("SKU-A", "wh-1")).reserved == 0

    @pytest.mark.asyncio
    async def test_release_missing(self, manager: ReservationManager) -> None:
        assert await manager.release(uuid4()) is None

    @pytest.mark.asyncio
    async def test_release_leaves_fulfilled(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})
        await manager.finalize(order_id)

        result = await manager.release(order_id)

        assert result.status == ReservationStatus.FULFILLED
        assert (await manager.get_stock("SKU-A", "wh-1")).on_hand == 3

    @pytest.mark.asyncio
    async def test_restock_fulfilled(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        order_id = uuid4()
        await manager.reserve(order_id, {"SKU-A": 2})
        await manager.finalize(order_id)

        restocked = await manager.restock(order_id, reason="order_cancelled")
        again = await manager.restock(order_id)

        assert restocked.status == ReservationStatus.RELEASED
        assert restocked.release_reason == "order_cancelled"
        assert again == restocked
        assert (await manager.get_stock("SKU-A", "wh-1")).on_hand == 5

    @pytest.mark.asyncio
    async def test_list_reservations_by_status(self, manager: ReservationManager) -> None:
        await manager.set_stock("SKU-A", "wh-1", 5)
        kept, dropped = uuid4(), uuid4()
        await manager.reserve(kept, {"SKU-A": 1})
        await manager.reserve(dropped, {"SKU-A": 1})
        await manager.release(dropped)

        active = await manager.list_reservations(ReservationStatus.ACTIVE)

        assert [r.order_id for r in active] == [kept]
        assert len(await manager.list_reservations()) == 2

    def test_invalid_default_ttl(self) -> None:
        with pytest.raises(ValueError):
            ReservationManager(default_ttl=timedelta(0), enable_tracing=False)
