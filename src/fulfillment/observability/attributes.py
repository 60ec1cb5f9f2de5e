"""
Standard span attributes for the fulfillment package.

Attribute constants used across all components for consistent span
naming. These follow OpenTelemetry semantic conventions where applicable.

Example:
    >>> from fulfillment.observability.attributes import ATTR_EVENT_TYPE, ATTR_ORDER_ID
    >>>
    >>> with tracer.span(
    ...     "fulfillment.inventory.reserve",
    ...     {ATTR_ORDER_ID: str(order_id)},
    ... ):
    ...     pass
"""

# =============================================================================
# Event Attributes
# =============================================================================

ATTR_EVENT_ID = "fulfillment.event.id"
"""Unique identifier for the event envelope (UUID string)."""

ATTR_EVENT_TYPE = "fulfillment.event.type"
"""Event type tag (e.g., 'order.created')."""

ATTR_EVENT_VERSION = "fulfillment.event.version"
"""Payload schema version (integer)."""

ATTR_CORRELATION_ID = "fulfillment.correlation.id"
"""Correlation ID shared by every event of one saga instance."""

ATTR_PARTITION_KEY = "fulfillment.partition.key"
"""Partition key used for per-order ordering."""

# =============================================================================
# Order Attributes
# =============================================================================

ATTR_ORDER_ID = "fulfillment.order.id"
"""Order identifier (UUID string)."""

ATTR_ORDER_STATUS = "fulfillment.order.status"
"""Order status after the operation."""

ATTR_ORDER_TRIGGER = "fulfillment.order.trigger"
"""Event type or command that drove a transition."""

ATTR_EXPECTED_VERSION = "fulfillment.expected_version"
"""Expected version for optimistic concurrency (integer)."""

# =============================================================================
# Inventory Attributes
# =============================================================================

ATTR_RESERVATION_ID = "fulfillment.reservation.id"
"""Reservation identifier (UUID string)."""

ATTR_ITEM_COUNT = "fulfillment.item.count"
"""Number of line items in a request (integer)."""

ATTR_SKU = "fulfillment.sku"
"""Stock-keeping unit."""

# =============================================================================
# Payment Attributes
# =============================================================================

ATTR_IDEMPOTENCY_KEY = "fulfillment.idempotency.key"
"""Idempotency key for an outbound command."""

ATTR_PAYMENT_STATUS = "fulfillment.payment.status"
"""Resulting payment record status."""

# =============================================================================
# Consumer Attributes
# =============================================================================

ATTR_CONSUMER_GROUP = "fulfillment.consumer_group"
"""Consumer group that handles an envelope."""

ATTR_HANDLER_NAME = "fulfillment.handler.name"
"""Name of the handler function or coordinator."""

ATTR_HANDLER_SUCCESS = "fulfillment.handler.success"
"""Whether the handler completed successfully (boolean)."""

ATTR_ATTEMPT = "fulfillment.delivery.attempt"
"""Delivery attempt number, 1-based (integer)."""

ATTR_RETRY_COUNT = "fulfillment.retry.count"
"""Number of retries made before dead-lettering (integer)."""

ATTR_ERROR_TYPE = "fulfillment.error.type"
"""Error type or short message."""

ATTR_DUPLICATE = "fulfillment.duplicate"
"""True when a redelivered envelope was skipped (boolean)."""

# =============================================================================
# Database / Messaging (OTEL semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system ('memory', 'sqlite', 'postgresql')."""

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system name."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Topic the envelope is published to."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_KEY = "fulfillment.lock.key"
"""Key of a keyed lock."""

ATTR_LOCK_TIMEOUT = "fulfillment.lock.timeout"
"""Lock acquisition timeout in seconds."""


__all__ = [
    "ATTR_EVENT_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_EVENT_VERSION",
    "ATTR_CORRELATION_ID",
    "ATTR_PARTITION_KEY",
    "ATTR_ORDER_ID",
    "ATTR_ORDER_STATUS",
    "ATTR_ORDER_TRIGGER",
    "ATTR_EXPECTED_VERSION",
    "ATTR_RESERVATION_ID",
    "ATTR_ITEM_COUNT",
    "ATTR_SKU",
    "ATTR_IDEMPOTENCY_KEY",
    "ATTR_PAYMENT_STATUS",
    "ATTR_CONSUMER_GROUP",
    "ATTR_HANDLER_NAME",
    "ATTR_HANDLER_SUCCESS",
    "ATTR_ATTEMPT",
    "ATTR_RETRY_COUNT",
    "ATTR_ERROR_TYPE",
    "ATTR_DUPLICATE",
    "ATTR_DB_SYSTEM",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_TIMEOUT",
]
