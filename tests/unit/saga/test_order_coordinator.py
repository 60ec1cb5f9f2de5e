"""
Unit tests for the order coordinator and its pure decision function.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from fulfillment.bus import InMemoryEventBus
from fulfillment.clock import ManualClock
from fulfillment.events import (
    EventEnvelope,
    EventPayload,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OrderCancelled,
    OrderConfirmed,
    OrderFailed,
    PaymentFailed,
    PaymentSucceeded,
    default_registry,
)
from fulfillment.exceptions import InvalidTransition, OrderNotFound, StaleVersion
from fulfillment.idempotency import InMemoryProcessedEventStore
from fulfillment.orders import InMemoryOrderRepository, Order, OrderStatus, state_machine
from fulfillment.saga import OrderCoordinator, decide
from fulfillment.types import Address, LineItem

NOW = datetime(2024, 1, 1, tzinfo=UTC)

# =============================================================================
# Helpers
# =============================================================================


def make_order(address: Address, items: list[LineItem], *triggers: str) -> Order:
    order = Order(
        user_id="user-1",
        items=items,
        total=Order.compute_total(items),
        shipping_address=address,
        billing_address=address,
        created_at=NOW,
        updated_at=NOW,
    )
    for trigger in triggers:
        order = state_machine.apply(order, trigger, at=NOW)
    return order


PROCESSING = (state_machine.TRIGGER_INVENTORY_RESERVED, state_machine.TRIGGER_REQUEST_PAYMENT)


def envelope_for(order: Order, payload: EventPayload) -> EventEnvelope:
    return EventEnvelope.wrap(
        payload, partition_key=str(order.order_id), correlation_id=order.correlation_id
    )


def succeeded(order: Order) -> PaymentSucceeded:
    return PaymentSucceeded(
        order_id=order.order_id,
        payment_id=uuid4(),
        idempotency_key=f"payment:{order.order_id}:1",
        amount=order.total,
        currency="USD",
        gateway_reference="ch_1",
    )


def failed(order: Order, reason: str = "card_declined") -> PaymentFailed:
    return PaymentFailed(
        order_id=order.order_id,
        payment_id=uuid4(),
        idempotency_key=f"payment:{order.order_id}:1",
        amount=order.total,
        currency="USD",
        reason=reason,
    )


def released(order: Order, reason: str = "expired") -> InventoryReleased:
    return InventoryReleased(order_id=order.order_id, reservation_id=uuid4(), reason=reason)


@pytest.fixture
def processing(address: Address, items: list[LineItem]) -> Order:
    return make_order(address, items, *PROCESSING)


# =============================================================================
# decide
# =============================================================================


class TestDecide:
    """Tests for (order, event) -> decision."""

    def test_payment_success_confirms(self, processing: Order) -> None:
        payload = succeeded(processing)
        envelope = envelope_for(processing, payload)

        decision = decide(processing, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.CONFIRMED
        assert decision.order.payment_id == payload.payment_id
        assert decision.order.version == processing.version + 1
        assert isinstance(decision.follow_up, OrderConfirmed)
        assert decision.follow_up.payment_id == payload.payment_id
        assert decision.follow_up.total == Decimal("25.50")

    def test_payment_failure_fails_then_cancels(self, processing: Order) -> None:
        payload = failed(processing)
        envelope = envelope_for(processing, payload)

        decision = decide(processing, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.CANCELLED
        assert decision.order.failure_reason == "card_declined"
        assert [t.to_status for t in decision.order.caused_by(envelope.event_id)] == [
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        ]
        assert decision.order.version == processing.version + 2
        assert isinstance(decision.follow_up, OrderFailed)
        assert decision.follow_up.reason == "card_declined"

    @pytest.mark.parametrize(
        "make_payload, expected_reason",
        [
            (lambda o: released(o), "inventory_released: expired"),
            (
                lambda o: InventoryReservationFailed(order_id=o.order_id, reason="expired"),
                "inventory_reservation_failed: expired",
            ),
        ],
    )
    def test_inventory_failures_cancel(
        self, processing: Order, make_payload, expected_reason: str
    ) -> None:
        payload = make_payload(processing)
        envelope = envelope_for(processing, payload)

        decision = decide(processing, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.CANCELLED
        assert decision.order.cancel_reason == expected_reason
        assert isinstance(decision.follow_up, OrderCancelled)
        assert decision.follow_up.previous_status == "payment_processing"
        assert decision.follow_up.reason == expected_reason

    def test_expired_hold_cancels_confirmed_order(
        self, address: Address, items: list[LineItem]
    ) -> None:
        confirmed = make_order(address, items, *PROCESSING, state_machine.TRIGGER_PAYMENT_SUCCESS)
        payload = released(confirmed)

        decision = decide(confirmed, envelope_for(confirmed, payload), payload, now=NOW)

        assert decision.order.status == OrderStatus.CANCELLED
        assert decision.follow_up.previous_status == "confirmed"

    def test_reapplied_event_repeats_follow_up(self, processing: Order) -> None:
        """Re-running after a crash republishes without changing the order."""
        payload = succeeded(processing)
        envelope = envelope_for(processing, payload)
        confirmed = decide(processing, envelope, payload, now=NOW).order

        decision = decide(confirmed, envelope, payload, now=NOW)

        assert decision.order is None
        assert isinstance(decision.follow_up, OrderConfirmed)
        assert decision.follow_up.payment_id == payload.payment_id

    def test_payment_success_after_cancel_is_anomaly(
        self, address: Address, items: list[LineItem]
    ) -> None:
        cancelled = make_order(address, items, state_machine.TRIGGER_CANCEL)
        payload = succeeded(cancelled)

        decision = decide(cancelled, envelope_for(cancelled, payload), payload, now=NOW)

        assert decision.order is None
        assert decision.follow_up is None
        assert str(payload.payment_id) in decision.anomaly

    def test_compensation_echo_ignored(self, address: Address, items: list[LineItem]) -> None:
        cancelled = make_order(address, items, state_machine.TRIGGER_CANCEL)
        payload = released(cancelled, "order_cancelled")

        decision = decide(cancelled, envelope_for(cancelled, payload), payload, now=NOW)

        assert decision.order is None
        assert decision.follow_up is None
        assert decision.anomaly is None

    def test_inventory_reserved_starts_payment(
        self, address: Address, items: list[LineItem], processing: Order
    ) -> None:
        reserved = make_order(address, items, state_machine.TRIGGER_INVENTORY_RESERVED)
        payload = InventoryReserved(
            order_id=reserved.order_id, reservation_id=uuid4(), items=(), expires_at=NOW
        )

        decision = decide(reserved, envelope_for(reserved, payload), payload, now=NOW)
        assert decision.order.status == OrderStatus.PAYMENT_PROCESSING
        assert decision.order.version == reserved.version + 1
        assert decision.follow_up is None

        later = decide(processing, envelope_for(processing, payload), payload, now=NOW)
        assert later.order is None
        assert later.follow_up is None

    def test_inventory_reserved_on_pending_order(
        self, address: Address, items: list[LineItem]
    ) -> None:
        pending = make_order(address, items)
        reservation_id = uuid4()
        payload = InventoryReserved(
            order_id=pending.order_id, reservation_id=reservation_id, items=(), expires_at=NOW
        )
        envelope = envelope_for(pending, payload)

        decision = decide(pending, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.PAYMENT_PROCESSING
        assert decision.order.reservation_id == reservation_id
        assert [t.to_status for t in decision.order.caused_by(envelope.event_id)] == [
            OrderStatus.INVENTORY_RESERVED,
            OrderStatus.PAYMENT_PROCESSING,
        ]
        assert decision.follow_up is None

    def test_payment_success_before_inventory_reserved(
        self, address: Address, items: list[LineItem]
    ) -> None:
        """Payment outcomes can overtake inventory.reserved."""
        reserved = make_order(address, items, state_machine.TRIGGER_INVENTORY_RESERVED)
        payload = succeeded(reserved)
        envelope = envelope_for(reserved, payload)

        decision = decide(reserved, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.CONFIRMED
        assert [t.to_status for t in decision.order.caused_by(envelope.event_id)] == [
            OrderStatus.PAYMENT_PROCESSING,
            OrderStatus.CONFIRMED,
        ]
        assert isinstance(decision.follow_up, OrderConfirmed)

        again = decide(decision.order, envelope, payload, now=NOW)
        assert again.order is None
        assert isinstance(again.follow_up, OrderConfirmed)

    def test_payment_failure_before_inventory_reserved(
        self, address: Address, items: list[LineItem]
    ) -> None:
        reserved = make_order(address, items, state_machine.TRIGGER_INVENTORY_RESERVED)
        payload = failed(reserved, "insufficient_funds")
        envelope = envelope_for(reserved, payload)

        decision = decide(reserved, envelope, payload, now=NOW)

        assert decision.order.status == OrderStatus.CANCELLED
        assert decision.order.version == reserved.version + 3
        assert isinstance(decision.follow_up, OrderFailed)
        assert decision.follow_up.reason == "insufficient_funds"

    def test_refused_compensation_raises(
        self, processing: Order, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delitem(
            state_machine.TRANSITIONS, (OrderStatus.FAILED, state_machine.TRIGGER_COMPENSATE)
        )
        payload = failed(processing)

        with pytest.raises(InvalidTransition) as exc_info:
            decide(processing, envelope_for(processing, payload), payload, now=NOW)

        assert exc_info.value.status == "failed"
        assert exc_info.value.trigger == state_machine.TRIGGER_COMPENSATE

    def test_out_of_order_event_discarded(
        self, address: Address, items: list[LineItem]
    ) -> None:
        shipped = make_order(
            address,
            items,
            *PROCESSING,
            state_machine.TRIGGER_PAYMENT_SUCCESS,
            state_machine.TRIGGER_SHIP,
        )
        payload = failed(shipped)

        decision = decide(shipped, envelope_for(shipped, payload), payload, now=NOW)

        assert decision.order is None
        assert decision.follow_up is None


# =============================================================================
# OrderCoordinator
# =============================================================================


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository(enable_tracing=False)


@pytest.fixture
def coordinator(
    bus: InMemoryEventBus,
    processed: InMemoryProcessedEventStore,
    repository: InMemoryOrderRepository,
    clock: ManualClock,
) -> OrderCoordinator:
    return OrderCoordinator(bus, processed, repository, clock=clock, enable_tracing=False)


class TestOrderCoordinator:
    """Tests for loading, storing and announcing decisions."""

    @pytest.mark.asyncio
    async def test_confirms_and_announces(
        self,
        coordinator: OrderCoordinator,
        repository: InMemoryOrderRepository,
        bus: InMemoryEventBus,
        processing: Order,
    ) -> None:
        await repository.add(processing)
        envelope = envelope_for(processing, succeeded(processing))

        await coordinator.handle(envelope)

        stored = await repository.get(processing.order_id)
        assert stored.status == OrderStatus.CONFIRMED
        [announced] = bus.get_published("order.confirmed")
        assert announced.causation_id == envelope.event_id
        assert announced.correlation_id == processing.correlation_id
        assert default_registry.decode(announced).order_id == processing.order_id

    @pytest.mark.asyncio
    async def test_version_conflict_retried_with_fresh_read(
        self,
        bus: InMemoryEventBus,
        processed: InMemoryProcessedEventStore,
        clock: ManualClock,
        processing: Order,
    ) -> None:
        class ConflictingRepository(InMemoryOrderRepository):
            conflicts = 1

            async def save(self, order: Order, expected_version: int) -> Order:
                if self.conflicts:
                    self.conflicts -= 1
                    raise StaleVersion(order.order_id, expected_version, expected_version + 1)
                return await super().save(order, expected_version)

        repository = ConflictingRepository(enable_tracing=False)
        await repository.add(processing)
        coordinator = OrderCoordinator(
            bus, processed, repository, clock=clock, enable_tracing=False
        )

        await coordinator.handle(envelope_for(processing, succeeded(processing)))

        assert (await repository.get(processing.order_id)).status == OrderStatus.CONFIRMED
        assert len(bus.get_published("order.confirmed")) == 1

    @pytest.mark.asyncio
    async def test_unknown_order_is_retried_by_bus(
        self,
        coordinator: OrderCoordinator,
        processed: InMemoryProcessedEventStore,
        processing: Order,
    ) -> None:
        envelope = envelope_for(processing, succeeded(processing))

        with pytest.raises(OrderNotFound):
            await coordinator.handle(envelope)

        assert await processed.get_marker("order-service", envelope.event_id) is None

    @pytest.mark.asyncio
    async def test_anomaly_counted(
        self,
        coordinator: OrderCoordinator,
        repository: InMemoryOrderRepository,
        bus: InMemoryEventBus,
        address: Address,
        items: list[LineItem],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        cancelled = make_order(address, items, state_machine.TRIGGER_CANCEL)
        await repository.add(cancelled)

        await coordinator.handle(envelope_for(cancelled, succeeded(cancelled)))

        assert coordinator.stats["anomalies"] == 1
        assert "succeeded after order was cancelled" in caplog.text
        assert bus.get_published() == []

    @pytest.mark.asyncio
    async def test_topics(self, coordinator: OrderCoordinator) -> None:
        assert coordinator.topics == [
            "inventory.released",
            "inventory.reservation.failed",
            "inventory.reserved",
            "payment.failed",
            "payment.success",
        ]
