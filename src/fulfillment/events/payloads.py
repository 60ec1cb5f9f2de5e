"""
Typed payloads for every event exchanged by the fulfillment saga.

Each class is registered in the default payload registry under its
``(event_type, version)`` pair. Adding a new schema version means adding a
new class with the same ``event_type`` and a higher ``version``; old
versions stay registered until no producer emits them any more.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from pydantic import Field

from fulfillment.events.base import EventPayload
from fulfillment.events.registry import register_payload
from fulfillment.types import Address, LineItem, ReservationItem

# =============================================================================
# Order events
# =============================================================================


@register_payload
class OrderCreated(EventPayload):
    """Order accepted with stock already held; starts the saga."""

    event_type: ClassVar[str] = "order.created"
    version: ClassVar[int] = 1

    order_id: UUID
    user_id: str
    items: tuple[LineItem, ...] = Field(..., min_length=1)
    total: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    reservation_id: UUID
    shipping_address: Address
    billing_address: Address
    payment_attempt: int = Field(default=1, ge=1)


@register_payload
class OrderConfirmed(EventPayload):
    """Payment captured; the order is confirmed."""

    event_type: ClassVar[str] = "order.confirmed"
    version: ClassVar[int] = 1

    order_id: UUID
    user_id: str
    total: Decimal
    currency: str
    payment_id: UUID | None = None


@register_payload
class OrderCancelled(EventPayload):
    """Order cancelled by command or by compensation."""

    event_type: ClassVar[str] = "order.cancelled"
    version: ClassVar[int] = 1

    order_id: UUID
    user_id: str
    reason: str
    previous_status: str


@register_payload
class OrderFailed(EventPayload):
    """Order failed because a saga step failed terminally."""

    event_type: ClassVar[str] = "order.failed"
    version: ClassVar[int] = 1

    order_id: UUID
    user_id: str
    reason: str


# =============================================================================
# Inventory events
# =============================================================================


@register_payload
class InventoryReserved(EventPayload):
    """Stock for the order is held until ``expires_at``."""

    event_type: ClassVar[str] = "inventory.reserved"
    version: ClassVar[int] = 1

    order_id: UUID
    reservation_id: UUID
    items: tuple[ReservationItem, ...]
    expires_at: datetime


@register_payload
class InventoryReservationFailed(EventPayload):
    """No usable hold exists for the order."""

    event_type: ClassVar[str] = "inventory.reservation.failed"
    version: ClassVar[int] = 1

    order_id: UUID
    reason: str


@register_payload
class InventoryReleased(EventPayload):
    """Held stock returned to availability (compensation or expiry)."""

    event_type: ClassVar[str] = "inventory.released"
    version: ClassVar[int] = 1

    order_id: UUID
    reservation_id: UUID | None = None
    reason: str


# =============================================================================
# Payment events
# =============================================================================


@register_payload
class PaymentSucceeded(EventPayload):
    """Charge captured by the gateway."""

    event_type: ClassVar[str] = "payment.success"
    version: ClassVar[int] = 1

    order_id: UUID
    payment_id: UUID
    idempotency_key: str
    amount: Decimal
    currency: str
    gateway_reference: str | None = None


@register_payload
class PaymentFailed(EventPayload):
    """Charge declined; terminal for this payment attempt."""

    event_type: ClassVar[str] = "payment.failed"
    version: ClassVar[int] = 1

    order_id: UUID
    payment_id: UUID
    idempotency_key: str
    amount: Decimal
    currency: str
    reason: str


__all__ = [
    "OrderCreated",
    "OrderConfirmed",
    "OrderCancelled",
    "OrderFailed",
    "InventoryReserved",
    "InventoryReservationFailed",
    "InventoryReleased",
    "PaymentSucceeded",
    "PaymentFailed",
]
