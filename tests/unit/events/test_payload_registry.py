"""
Unit tests for PayloadRegistry.

Tests cover:
- Registration and duplicate detection
- Decoding envelopes into typed payloads
- Unknown types, unsupported versions and malformed payloads
- The default registry and register_payload decorator
"""

from typing import ClassVar
from uuid import uuid4

import pytest

from fulfillment.events import (
    DuplicatePayloadError,
    EventEnvelope,
    EventPayload,
    InventoryReleased,
    MalformedPayload,
    PayloadRegistry,
    default_registry,
    register_payload,
)
from fulfillment.exceptions import UnknownEventType, UnsupportedEventVersion

# =============================================================================
# Test payloads
# =============================================================================


class GiftWrapped(EventPayload):
    event_type: ClassVar[str] = "order.gift_wrapped"
    version: ClassVar[int] = 1

    order_id: str
    paper: str


class GiftWrappedV2(EventPayload):
    event_type: ClassVar[str] = "order.gift_wrapped"
    version: ClassVar[int] = 2

    order_id: str
    paper: str
    ribbon: bool = False


class ImpostorGiftWrapped(EventPayload):
    event_type: ClassVar[str] = "order.gift_wrapped"
    version: ClassVar[int] = 1

    order_id: str


class Untyped(EventPayload):
    order_id: str


@pytest.fixture
def registry() -> PayloadRegistry:
    registry = PayloadRegistry()
    registry.register(GiftWrapped)
    return registry


def _envelope(payload: dict, version: int = 1, event_type: str = "order.gift_wrapped") -> EventEnvelope:
    return EventEnvelope(
        event_type=event_type,
        version=version,
        partition_key="order-1",
        payload=payload,
    )


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """Tests for PayloadRegistry.register."""

    def test_register_returns_class(self) -> None:
        assert PayloadRegistry().register(GiftWrapped) is GiftWrapped

    def test_reregistering_same_class_is_noop(self, registry: PayloadRegistry) -> None:
        registry.register(GiftWrapped)

        assert len(registry) == 1

    def test_conflicting_class_rejected(self, registry: PayloadRegistry) -> None:
        with pytest.raises(DuplicatePayloadError):
            registry.register(ImpostorGiftWrapped)

    def test_missing_event_type_rejected(self) -> None:
        with pytest.raises(ValueError, match="must declare"):
            PayloadRegistry().register(Untyped)

    def test_versions_coexist(self, registry: PayloadRegistry) -> None:
        registry.register(GiftWrappedV2)

        assert registry.supports("order.gift_wrapped", 1)
        assert registry.supports("order.gift_wrapped", 2)
        assert sorted(registry) == [("order.gift_wrapped", 1), ("order.gift_wrapped", 2)]
        assert registry.list_types() == ["order.gift_wrapped"]

    def test_contains_and_clear(self, registry: PayloadRegistry) -> None:
        assert "order.gift_wrapped" in registry

        registry.clear()

        assert "order.gift_wrapped" not in registry
        assert len(registry) == 0


# =============================================================================
# Decoding
# =============================================================================


class TestDecode:
    """Tests for PayloadRegistry.decode."""

    def test_decodes_typed_payload(self, registry: PayloadRegistry) -> None:
        payload = registry.decode(_envelope({"order_id": "o-1", "paper": "gold"}))

        assert isinstance(payload, GiftWrapped)
        assert payload.paper == "gold"

    def test_version_selects_class(self, registry: PayloadRegistry) -> None:
        registry.register(GiftWrappedV2)

        payload = registry.decode(_envelope({"order_id": "o-1", "paper": "red", "ribbon": True}, 2))

        assert isinstance(payload, GiftWrappedV2)
        assert payload.ribbon is True

    def test_unknown_type(self, registry: PayloadRegistry) -> None:
        with pytest.raises(UnknownEventType) as exc_info:
            registry.decode(_envelope({}, event_type="order.teleported"))

        assert exc_info.value.available_types == ["order.gift_wrapped"]

    def test_unsupported_version(self, registry: PayloadRegistry) -> None:
        """A known type with an unknown version is never guessed at."""
        with pytest.raises(UnsupportedEventVersion) as exc_info:
            registry.decode(_envelope({"order_id": "o-1", "paper": "gold"}, version=9))

        assert exc_info.value.supported == [1]

    def test_malformed_payload(self, registry: PayloadRegistry) -> None:
        with pytest.raises(MalformedPayload, match="order.gift_wrapped"):
            registry.decode(_envelope({"order_id": "o-1"}))


# =============================================================================
# Default registry
# =============================================================================


class TestDefaultRegistry:
    """Tests for the module-level registry and decorator."""

    @pytest.mark.parametrize(
        "event_type",
        [
            "order.created",
            "order.confirmed",
            "order.cancelled",
            "order.failed",
            "inventory.reserved",
            "inventory.reservation.failed",
            "inventory.released",
            "payment.success",
            "payment.failed",
        ],
    )
    def test_saga_events_registered(self, event_type: str) -> None:
        assert default_registry.supports(event_type, 1)

    def test_decodes_saga_event(self) -> None:
        order_id = uuid4()
        envelope = EventEnvelope.wrap(
            InventoryReleased(order_id=order_id, reason="expired"),
            partition_key=str(order_id),
        )

        payload = default_registry.decode(envelope)

        assert isinstance(payload, InventoryReleased)
        assert payload.order_id == order_id
        assert payload.reservation_id is None

    def test_decorator_with_custom_registry(self) -> None:
        registry = PayloadRegistry()

        @register_payload(registry=registry)
        class Gifted(EventPayload):
            event_type: ClassVar[str] = "order.gifted"
            recipient: str

        assert registry.get("order.gifted", 1) is Gifted
        assert not default_registry.supports("order.gifted", 1)
