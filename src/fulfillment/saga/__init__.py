"""
Choreography coordinators for the fulfillment saga.

Each participating service runs one coordinator. A coordinator reacts to
the events of its domain, deduplicates them, performs its local action and
publishes exactly one follow-up event describing the outcome. Compensation
is ordinary events flowing the other way.

Example:
    >>> from fulfillment.saga import FulfillmentSaga
    >>>
    >>> async with FulfillmentSaga() as saga:
    ...     await saga.orders.create_order(command)
"""

from fulfillment.saga.coordinator import Reaction, SagaCoordinator
from fulfillment.saga.inventory import INVENTORY_SERVICE, InventoryCoordinator
from fulfillment.saga.notification import (
    NOTIFICATION_SERVICE,
    InMemoryNotifier,
    Notification,
    NotificationCoordinator,
    Notifier,
)
from fulfillment.saga.order import OrderCoordinator, OrderDecision, decide
from fulfillment.saga.payment import PAYMENT_SERVICE, PaymentCoordinator
from fulfillment.saga.wiring import FulfillmentSaga

__all__ = [
    "FulfillmentSaga",
    "INVENTORY_SERVICE",
    "InMemoryNotifier",
    "InventoryCoordinator",
    "NOTIFICATION_SERVICE",
    "Notification",
    "NotificationCoordinator",
    "Notifier",
    "OrderCoordinator",
    "OrderDecision",
    "PAYMENT_SERVICE",
    "PaymentCoordinator",
    "Reaction",
    "SagaCoordinator",
    "decide",
]
