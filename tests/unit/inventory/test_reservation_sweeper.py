"""
Unit tests for ReservationSweeper.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from fulfillment.bus import InMemoryEventBus
from fulfillment.clock import ManualClock
from fulfillment.events import EventEnvelope, default_registry
from fulfillment.exceptions import TransientBusError
from fulfillment.inventory import ReservationManager, ReservationSweeper, expiry_event_id


@pytest.fixture
def sweeper(manager: ReservationManager, bus: InMemoryEventBus) -> ReservationSweeper:
    return ReservationSweeper(manager, bus, interval=0.01, enable_tracing=False)


async def _expired_hold(manager: ReservationManager, clock: ManualClock):
    await manager.set_stock("SKU-A", "wh-1", 5)
    order_id = uuid4()
    reservation = await manager.reserve(
        order_id, {"SKU-A": 2}, ttl=timedelta(seconds=1), correlation_id=order_id
    )
    clock.advance(2)
    return reservation


class TestRunOnce:
    """Tests for a single sweep."""

    @pytest.mark.asyncio
    async def test_announces_expired_reservations(
        self,
        sweeper: ReservationSweeper,
        manager: ReservationManager,
        bus: InMemoryEventBus,
        clock: ManualClock,
    ) -> None:
        reservation = await _expired_hold(manager, clock)

        announced = await sweeper.run_once()

        assert [r.reservation_id for r in announced] == [reservation.reservation_id]
        [envelope] = bus.get_published("inventory.released")
        payload = default_registry.decode(envelope)
        assert payload.order_id == reservation.order_id
        assert payload.reservation_id == reservation.reservation_id
        assert payload.reason == "expired"
        assert envelope.partition_key == str(reservation.order_id)
        assert envelope.correlation_id == reservation.correlation_id
        assert envelope.event_id == expiry_event_id(reservation)
        assert await manager.available("SKU-A") == 5
        assert sweeper.stats == {"sweeps": 1, "announced": 1}

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(
        self, sweeper: ReservationSweeper, bus: InMemoryEventBus
    ) -> None:
        assert await sweeper.run_once() == []
        assert bus.get_published() == []

    @pytest.mark.asyncio
    async def test_failed_publish_is_retried_next_sweep(
        self,
        manager: ReservationManager,
        clock: ManualClock,
    ) -> None:
        """An announcement that could not be published is not lost."""
        published: list[EventEnvelope] = []

        class FlakyBus:
            fail = True

            async def publish(self, envelope: EventEnvelope) -> None:
                if self.fail:
                    raise TransientBusError("broker down")
                published.append(envelope)

        bus = FlakyBus()
        sweeper = ReservationSweeper(manager, bus, enable_tracing=False)
        reservation = await _expired_hold(manager, clock)

        with pytest.raises(TransientBusError):
            await sweeper.run_once()

        bus.fail = False
        announced = await sweeper.run_once()

        assert [r.reservation_id for r in announced] == [reservation.reservation_id]
        assert published[0].event_id == expiry_event_id(reservation)

    @pytest.mark.asyncio
    async def test_expiry_event_id_is_deterministic(
        self, manager: ReservationManager, clock: ManualClock
    ) -> None:
        reservation = await _expired_hold(manager, clock)
        other = await _expired_hold(manager, clock)

        assert expiry_event_id(reservation) == expiry_event_id(reservation)
        assert expiry_event_id(reservation) != expiry_event_id(other)

    def test_invalid_interval(self, manager: ReservationManager) -> None:
        with pytest.raises(ValueError):
            ReservationSweeper(manager, InMemoryEventBus(enable_tracing=False), interval=0)


class TestBackgroundLoop:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(
        self,
        sweeper: ReservationSweeper,
        manager: ReservationManager,
        bus: InMemoryEventBus,
        clock: ManualClock,
    ) -> None:
        await _expired_hold(manager, clock)

        await sweeper.start()
        await sweeper.start()
        assert sweeper.is_running

        for _ in range(100):
            if bus.get_published("inventory.released"):
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert not sweeper.is_running
        assert len(bus.get_published("inventory.released")) == 1
        assert sweeper.stats["sweeps"] >= 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sweeper: ReservationSweeper) -> None:
        await sweeper.stop()

        assert not sweeper.is_running
