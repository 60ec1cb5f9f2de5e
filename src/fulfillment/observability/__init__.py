"""
Observability utilities for the fulfillment package.

Provides the composition-based tracer and standard span attribute names
shared by every component.

Example:
    >>> from fulfillment.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from fulfillment.observability.attributes import (
    ATTR_ATTEMPT,
    ATTR_CONSUMER_GROUP,
    ATTR_CORRELATION_ID,
    ATTR_DB_SYSTEM,
    ATTR_DUPLICATE,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_EVENT_VERSION,
    ATTR_EXPECTED_VERSION,
    ATTR_HANDLER_NAME,
    ATTR_HANDLER_SUCCESS,
    ATTR_IDEMPOTENCY_KEY,
    ATTR_ITEM_COUNT,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ORDER_ID,
    ATTR_ORDER_STATUS,
    ATTR_ORDER_TRIGGER,
    ATTR_PARTITION_KEY,
    ATTR_PAYMENT_STATUS,
    ATTR_RESERVATION_ID,
    ATTR_RETRY_COUNT,
    ATTR_SKU,
)
from fulfillment.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanAttributes,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanAttributes",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_ATTEMPT",
    "ATTR_CONSUMER_GROUP",
    "ATTR_CORRELATION_ID",
    "ATTR_DB_SYSTEM",
    "ATTR_DUPLICATE",
    "ATTR_ERROR_TYPE",
    "ATTR_EVENT_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_EVENT_VERSION",
    "ATTR_EXPECTED_VERSION",
    "ATTR_HANDLER_NAME",
    "ATTR_HANDLER_SUCCESS",
    "ATTR_IDEMPOTENCY_KEY",
    "ATTR_ITEM_COUNT",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_ORDER_ID",
    "ATTR_ORDER_STATUS",
    "ATTR_ORDER_TRIGGER",
    "ATTR_PARTITION_KEY",
    "ATTR_PAYMENT_STATUS",
    "ATTR_RESERVATION_ID",
    "ATTR_RETRY_COUNT",
    "ATTR_SKU",
]
