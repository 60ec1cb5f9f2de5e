"""
Unit tests for EventEnvelope.

Tests cover:
- Wrapping typed payloads
- Correlation and causation inheritance
- Deterministic follow-up IDs
- Immutability and dictionary conversion
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError

from fulfillment.events import (
    EventEnvelope,
    InventoryReleased,
    OrderCancelled,
    PaymentFailed,
)


@pytest.fixture
def cancelled() -> EventEnvelope:
    order_id = uuid4()
    return EventEnvelope.wrap(
        OrderCancelled(
            order_id=order_id,
            user_id="user-1",
            reason="changed mind",
            previous_status="inventory_reserved",
        ),
        partition_key=str(order_id),
        correlation_id=order_id,
    )


class TestWrap:
    """Tests for EventEnvelope.wrap."""

    def test_copies_type_and_version(self, cancelled: EventEnvelope) -> None:
        assert cancelled.event_type == "order.cancelled"
        assert cancelled.version == 1
        assert cancelled.causation_id is None

    def test_payload_is_json_compatible(self, cancelled: EventEnvelope) -> None:
        """UUIDs are serialized to strings in the payload."""
        assert isinstance(cancelled.payload["order_id"], str)
        assert cancelled.payload["reason"] == "changed mind"

    def test_caused_by_inherits_correlation(self, cancelled: EventEnvelope) -> None:
        released = EventEnvelope.wrap(
            InventoryReleased(order_id=uuid4(), reason="order_cancelled"),
            partition_key=cancelled.partition_key,
            correlation_id=uuid4(),
            caused_by=cancelled,
        )

        assert released.correlation_id == cancelled.correlation_id
        assert released.causation_id == cancelled.event_id
        assert released.is_caused_by(cancelled)
        assert released.is_correlated_with(cancelled)

    def test_explicit_id_and_timestamp(self) -> None:
        event_id = uuid4()
        at = datetime(2024, 5, 1, tzinfo=UTC)
        envelope = EventEnvelope.wrap(
            InventoryReleased(order_id=uuid4(), reason="expired"),
            partition_key="p",
            event_id=event_id,
            timestamp=at,
        )

        assert envelope.event_id == event_id
        assert envelope.timestamp == at

    def test_unrelated_envelopes(self, cancelled: EventEnvelope) -> None:
        other = EventEnvelope.wrap(
            InventoryReleased(order_id=uuid4(), reason="expired"),
            partition_key="p",
        )

        assert not other.is_caused_by(cancelled)
        assert not other.is_correlated_with(cancelled)


class TestFollowUpId:
    """Tests for deterministic follow-up IDs."""

    def test_same_inputs_same_id(self, cancelled: EventEnvelope) -> None:
        first = EventEnvelope.follow_up_id("inventory-service", cancelled, "inventory.released")
        second = EventEnvelope.follow_up_id("inventory-service", cancelled, "inventory.released")

        assert first == second

    def test_differs_by_group_and_type(self, cancelled: EventEnvelope) -> None:
        ids = {
            EventEnvelope.follow_up_id("inventory-service", cancelled, "inventory.released"),
            EventEnvelope.follow_up_id("payment-service", cancelled, "inventory.released"),
            EventEnvelope.follow_up_id("inventory-service", cancelled, "inventory.reserved"),
        }

        assert len(ids) == 3

    def test_differs_by_cause(self, cancelled: EventEnvelope) -> None:
        other = cancelled.model_copy(update={"event_id": uuid4()})

        assert EventEnvelope.follow_up_id("g", cancelled, "t") != EventEnvelope.follow_up_id(
            "g", other, "t"
        )


class TestEnvelopeModel:
    """Tests for validation, immutability and conversion."""

    def test_frozen(self, cancelled: EventEnvelope) -> None:
        with pytest.raises(ValidationError):
            cancelled.event_type = "order.created"  # type: ignore[misc]

    def test_requires_partition_key(self) -> None:
        with pytest.raises(ValidationError):
            EventEnvelope(event_type="order.created", partition_key="")

    def test_version_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            EventEnvelope(event_type="order.created", partition_key="p", version=0)

    def test_dict_round_trip(self, cancelled: EventEnvelope) -> None:
        assert EventEnvelope.from_dict(cancelled.to_dict()) == cancelled

    def test_str(self, cancelled: EventEnvelope) -> None:
        assert str(cancelled).startswith("order.cancelled(event_id=")

    def test_payload_models_are_frozen(self) -> None:
        payload = PaymentFailed(
            order_id=uuid4(),
            payment_id=uuid4(),
            idempotency_key="payment:x:1",
            amount="10.00",
            currency="USD",
            reason="card_declined",
        )

        with pytest.raises(ValidationError):
            payload.reason = "other"  # type: ignore[misc]
