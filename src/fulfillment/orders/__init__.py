"""
Orders: state, state machine, persistence and the command service.

Example:
    >>> from fulfillment.orders import CreateOrder, OrderService
    >>>
    >>> order = await service.create_order(CreateOrder(...))
"""

from fulfillment.orders import state_machine
from fulfillment.orders.commands import CancelOrder, CreateOrder
from fulfillment.orders.models import Order, OrderStatus, OrderTransition
from fulfillment.orders.repository import InMemoryOrderRepository, OrderRepository
from fulfillment.orders.service import (
    ORDER_SERVICE,
    OrderService,
    order_event_id,
    retry_on_stale_version,
)
from fulfillment.orders.state_machine import (
    CANCELLABLE_STATUSES,
    RETURN_ROUTED_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
)

__all__ = [
    "CANCELLABLE_STATUSES",
    "CancelOrder",
    "CreateOrder",
    "InMemoryOrderRepository",
    "ORDER_SERVICE",
    "Order",
    "OrderRepository",
    "OrderService",
    "OrderStatus",
    "OrderTransition",
    "RETURN_ROUTED_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "order_event_id",
    "retry_on_stale_version",
    "state_machine",
]
