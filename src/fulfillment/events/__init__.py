"""
Event envelope, typed payloads and the payload registry.

Example:
    >>> from fulfillment.events import EventEnvelope, OrderCancelled, default_registry
    >>>
    >>> envelope = EventEnvelope.wrap(
    ...     OrderCancelled(order_id=order_id, user_id="u-1", reason="changed mind",
    ...                    previous_status="inventory_reserved"),
    ...     partition_key=str(order_id),
    ... )
    >>> payload = default_registry.decode(envelope)
"""

from fulfillment.events.base import FOLLOW_UP_NAMESPACE, EventEnvelope, EventPayload
from fulfillment.events.payloads import (
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderFailed,
    PaymentFailed,
    PaymentSucceeded,
)
from fulfillment.events.registry import (
    DuplicatePayloadError,
    MalformedPayload,
    PayloadRegistry,
    default_registry,
    register_payload,
)

__all__ = [
    # Base
    "EventEnvelope",
    "EventPayload",
    "FOLLOW_UP_NAMESPACE",
    # Registry
    "PayloadRegistry",
    "DuplicatePayloadError",
    "MalformedPayload",
    "default_registry",
    "register_payload",
    # Payloads
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
