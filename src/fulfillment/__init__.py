"""
fulfillment - Order-fulfillment saga coordinated by events.

This library provides:
- Versioned event envelopes with typed payloads and a payload registry
- In-memory event bus with per-order ordering, retry and dead-lettering
- Processed-event markers and idempotency keys (memory, SQLite, PostgreSQL)
- Inventory reservations with TTL expiry and a background sweeper
- Order state machine with optimistic concurrency
- Choreography coordinators for orders, inventory, payment and notification
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fulfillment-saga")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from fulfillment.bus import EventBus, InMemoryEventBus
from fulfillment.clock import ManualClock
from fulfillment.config import SagaConfig
from fulfillment.events import (
    EventEnvelope,
    EventPayload,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderFailed,
    PaymentFailed,
    PaymentSucceeded,
    PayloadRegistry,
    default_registry,
    register_payload,
)
from fulfillment.exceptions import (
    CancellationRejected,
    DuplicateOrder,
    EventClaimed,
    FulfillmentError,
    IdempotencyKeyInFlight,
    InsufficientStock,
    InvalidTransition,
    LockAcquisitionError,
    NonRetryableEventError,
    OrderNotFound,
    PaymentDeclined,
    ReservationExpired,
    ReservationNotFound,
    StaleVersion,
    TransientBusError,
    TransientError,
    TransientGatewayError,
    UnknownEventType,
    UnsupportedEventVersion,
)
from fulfillment.idempotency import (
    IdempotencyKeyStore,
    InMemoryIdempotencyKeyStore,
    InMemoryProcessedEventStore,
    ProcessedEventStore,
)
from fulfillment.inventory import (
    Reservation,
    ReservationManager,
    ReservationStatus,
    ReservationSweeper,
    StockLevel,
)
from fulfillment.orders import (
    CancelOrder,
    CreateOrder,
    InMemoryOrderRepository,
    Order,
    OrderService,
    OrderStatus,
)
from fulfillment.payments import (
    InMemoryPaymentGateway,
    PaymentRecord,
    PaymentService,
    PaymentStatus,
)
from fulfillment.retry import RetryConfig
from fulfillment.saga import (
    FulfillmentSaga,
    InventoryCoordinator,
    NotificationCoordinator,
    OrderCoordinator,
    PaymentCoordinator,
    SagaCoordinator,
)
from fulfillment.types import Address, LineItem, ReservationItem

__all__ = [
    "__version__",
    # Configuration
    "RetryConfig",
    "SagaConfig",
    "ManualClock",
    # Value objects
    "Address",
    "LineItem",
    "ReservationItem",
    # Events
    "EventEnvelope",
    "EventPayload",
    "PayloadRegistry",
    "default_registry",
    "register_payload",
    "OrderCreated",
    "OrderConfirmed",
    "OrderCancelled",
    "OrderFailed",
    "InventoryReserved",
    "InventoryReservationFailed",
    "InventoryReleased",
    "PaymentSucceeded",
    "PaymentFailed",
    # Bus
    "EventBus",
    "InMemoryEventBus",
    # Idempotency
    "ProcessedEventStore",
    "InMemoryProcessedEventStore",
    "IdempotencyKeyStore",
    "InMemoryIdempotencyKeyStore",
    # Inventory
    "Reservation",
    "ReservationManager",
    "ReservationStatus",
    "ReservationSweeper",
    "StockLevel",
    # Orders
    "CancelOrder",
    "CreateOrder",
    "InMemoryOrderRepository",
    "Order",
    "OrderService",
    "OrderStatus",
    # Payments
    "InMemoryPaymentGateway",
    "PaymentRecord",
    "PaymentService",
    "PaymentStatus",
    # Saga
    "FulfillmentSaga",
    "InventoryCoordinator",
    "NotificationCoordinator",
    "OrderCoordinator",
    "PaymentCoordinator",
    "SagaCoordinator",
    # Exceptions
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
