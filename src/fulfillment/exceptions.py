"""Library exceptions for the fulfillment package."""

from uuid import UUID


class FulfillmentError(Exception):
    """Base exception for the fulfillment saga core."""

    pass


# =============================================================================
# Inventory
# =============================================================================


class InsufficientStock(FulfillmentError):
    """
    Raised when a reservation request cannot be satisfied in full.

    This is a user-correctable error and is surfaced synchronously as the
    rejection of a CreateOrder command. No stock is held when it is raised.

    Attributes:
        order_id: The order that requested the reservation
        sku: First stock-keeping unit that could not be satisfied
        requested: Quantity requested for that SKU
        available: Quantity available for that SKU at check time
    """

    def __init__(self, order_id: UUID, sku: str, requested: int, available: int) -> None:
        self.order_id = order_id
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for order {order_id}: "
            f"requested {requested} of {sku}, only {available} available"
        )


class ReservationExpired(FulfillmentError):
    """
    Raised when a reservation is used after its expiry.

    This is a system-timing failure. Callers must take the compensating
    path instead of the happy path; it is never surfaced as a user error.
    """

    def __init__(self, order_id: UUID, reservation_id: UUID) -> None:
        self.order_id = order_id
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} for order {order_id} has expired")


class ReservationNotFound(FulfillmentError):
    """Raised when an order has no reservation."""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__(f"No reservation found for order {order_id}")


# =============================================================================
# Orders
# =============================================================================


class OrderNotFound(FulfillmentError):
    """Raised when an order cannot be found."""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class DuplicateOrder(FulfillmentError):
    """Raised when creating an order whose ID already exists."""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__(f"Order already exists: {order_id}")


class StaleVersion(FulfillmentError):
    """
    Raised when an order update carries an outdated version.

    The caller must re-read the order and retry the transition.
    """

    def __init__(self, order_id: UUID, expected_version: int, actual_version: int) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale version for order {order_id}: "
            f"expected version {expected_version}, but current version is {actual_version}"
        )


class InvalidTransition(FulfillmentError):
    """Raised when a command asks for a transition the state table does not list."""

    def __init__(self, order_id: UUID, status: str, trigger: str) -> None:
        self.order_id = order_id
        self.status = status
        self.trigger = trigger
        super().__init__(f"Order {order_id} cannot handle '{trigger}' while in status '{status}'")


class CancellationRejected(FulfillmentError):
    """
    Raised when an order can no longer be cancelled.

    Attributes:
        order_id: The order that was to be cancelled
        status: Status of the order at the time of the request
        requires_return: True when the order must go through the return
            sub-flow instead (shipped or delivered orders)
    """

    def __init__(self, order_id: UUID, status: str, requires_return: bool = False) -> None:
        self.order_id = order_id
        self.status = status
        self.requires_return = requires_return
        hint = " Use the return flow instead." if requires_return else ""
        super().__init__(f"Order {order_id} cannot be cancelled in status '{status}'.{hint}")


# =============================================================================
# Payments
# =============================================================================


class PaymentDeclined(FulfillmentError):
    """
    Raised by a payment gateway when a charge is refused.

    Terminal for the payment attempt; triggers compensation.
    """

    def __init__(self, order_id: UUID, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Payment declined for order {order_id}: {reason}")


# =============================================================================
# Transient failures (retried by the bus, eventually dead-lettered)
# =============================================================================


class TransientError(FulfillmentError):
    """Base for failures that are expected to succeed on retry."""

    pass


class TransientBusError(TransientError):
    """Raised when the bus cannot accept or deliver an envelope right now."""

    pass


class TransientGatewayError(TransientError):
    """Raised when the payment gateway times out or is temporarily unavailable."""

    def __init__(self, order_id: UUID, message: str) -> None:
        self.order_id = order_id
        super().__init__(f"Payment gateway error for order {order_id}: {message}")


class IdempotencyKeyInFlight(TransientError):
    """Raised when an idempotency key is reserved but its action has not completed."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Idempotency key '{key}' is already being processed")


class EventClaimed(TransientError):
    """Raised when another worker holds the processing claim on an event."""

    def __init__(self, consumer_group: str, event_id: UUID) -> None:
        self.consumer_group = consumer_group
        self.event_id = event_id
        super().__init__(
            f"Event {event_id} is being processed by another worker of {consumer_group}"
        )


class LockAcquisitionError(TransientError):
    """
    Raised when a keyed lock cannot be acquired within its timeout.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    def __init__(self, key: str, reason: str, timeout: float | None = None) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


# =============================================================================
# Events
# =============================================================================


class NonRetryableEventError(FulfillmentError):
    """Base for event errors that go straight to the dead-letter channel."""

    pass


class UnknownEventType(NonRetryableEventError):
    """Raised when no payload schema is registered for an event type."""

    def __init__(self, event_type: str, available_types: list[str]) -> None:
        self.event_type = event_type
        self.available_types = available_types
        available = ", ".join(sorted(available_types)) if available_types else "none"
        super().__init__(f"Unknown event type: '{event_type}'. Available types: {available}")


class UnsupportedEventVersion(NonRetryableEventError):
    """
    Raised when a payload version is not recognized.

    Coordinators never guess field semantics; the envelope is dead-lettered.
    """

    def __init__(self, event_type: str, version: int, supported: list[int]) -> None:
        self.event_type = event_type
        self.version = version
        self.supported = supported
        supported_str = ", ".join(str(v) for v in sorted(supported)) or "none"
        super().__init__(
            f"Unsupported version {version} for event type '{event_type}'. "
            f"Supported versions: {supported_str}"
        )


__all__ = [
    "FulfillmentError",
    "InsufficientStock",
    "ReservationExpired",
    "ReservationNotFound",
    "OrderNotFound",
    "DuplicateOrder",
    "StaleVersion",
    "InvalidTransition",
    "CancellationRejected",
    "PaymentDeclined",
    "TransientError",
    "TransientBusError",
    "TransientGatewayError",
    "IdempotencyKeyInFlight",
    "EventClaimed",
    "LockAcquisitionError",
    "NonRetryableEventError",
    "UnknownEventType",
    "UnsupportedEventVersion",
]
