"""
Order state machine.

Allowed transitions are a fixed table of ``(current status, trigger) ->
next status``. Triggers are the event types that move an order, plus the
command names used by the order service and the return sub-flow. A pair
missing from the table is logged and discarded; the order is left as is.

Happy path:
    pending -> inventory_reserved -> payment_processing -> confirmed

Failure branches:
    pending | inventory_reserved | payment_processing -> cancelled
        (reservation failed or released)
    payment_processing -> failed -> cancelled
        (payment failed, compensated)

``cancelled`` is terminal: no trigger leaves it.
"""

import logging
from datetime import datetime
from uuid import UUID

from fulfillment.orders.models import Order, OrderStatus

logger = logging.getLogger(__name__)

# Command triggers
TRIGGER_REQUEST_PAYMENT = "payment.requested"
TRIGGER_COMPENSATE = "compensate"
TRIGGER_CANCEL = "cancel"
TRIGGER_SHIP = "ship"
TRIGGER_DELIVER = "deliver"
TRIGGER_RETURN = "return"
TRIGGER_RETURN_ACCEPTED = "return.accepted"
TRIGGER_RETURN_REJECTED = "return.rejected"

# Event triggers
TRIGGER_INVENTORY_RESERVED = "inventory.reserved"
TRIGGER_RESERVATION_FAILED = "inventory.reservation.failed"
TRIGGER_INVENTORY_RELEASED = "inventory.released"
TRIGGER_PAYMENT_SUCCESS = "payment.success"
TRIGGER_PAYMENT_FAILED = "payment.failed"

S = OrderStatus

TRANSITIONS: dict[tuple[OrderStatus, str], OrderStatus] = {
    (S.PENDING, TRIGGER_INVENTORY_RESERVED): S.INVENTORY_RESERVED,
    (S.PENDING, TRIGGER_RESERVATION_FAILED): S.CANCELLED,
    (S.PENDING, TRIGGER_INVENTORY_RELEASED): S.CANCELLED,
    (S.PENDING, TRIGGER_CANCEL): S.CANCELLED,
    (S.INVENTORY_RESERVED, TRIGGER_REQUEST_PAYMENT): S.PAYMENT_PROCESSING,
    (S.INVENTORY_RESERVED, TRIGGER_RESERVATION_FAILED): S.CANCELLED,
    (S.INVENTORY_RESERVED, TRIGGER_INVENTORY_RELEASED): S.CANCELLED,
    (S.INVENTORY_RESERVED, TRIGGER_CANCEL): S.CANCELLED,
    (S.PAYMENT_PROCESSING, TRIGGER_PAYMENT_SUCCESS): S.CONFIRMED,
    (S.PAYMENT_PROCESSING, TRIGGER_PAYMENT_FAILED): S.FAILED,
    (S.PAYMENT_PROCESSING, TRIGGER_RESERVATION_FAILED): S.CANCELLED,
    (S.PAYMENT_PROCESSING, TRIGGER_INVENTORY_RELEASED): S.CANCELLED,
    (S.FAILED, TRIGGER_COMPENSATE): S.CANCELLED,
    # The hold expired before it could be finalized
    (S.CONFIRMED, TRIGGER_INVENTORY_RELEASED): S.CANCELLED,
    (S.CONFIRMED, TRIGGER_CANCEL): S.CANCELLED,
    (S.CONFIRMED, TRIGGER_SHIP): S.SHIPPED,
    (S.SHIPPED, TRIGGER_DELIVER): S.DELIVERED,
    (S.SHIPPED, TRIGGER_RETURN): S.RETURNED,
    (S.DELIVERED, TRIGGER_RETURN): S.RETURNED,
    (S.RETURNED, TRIGGER_RETURN_ACCEPTED): S.CANCELLED,
    (S.RETURNED, TRIGGER_RETURN_REJECTED): S.CONFIRMED,
}

TERMINAL_STATUSES = frozenset({S.CANCELLED})

# Statuses from which a customer cancellation is accepted
CANCELLABLE_STATUSES = frozenset({S.PENDING, S.INVENTORY_RESERVED, S.CONFIRMED})

# Statuses from which a cancellation is redirected to the return sub-flow
RETURN_ROUTED_STATUSES = frozenset({S.SHIPPED, S.DELIVERED})

# Statuses the saga ends in
SAGA_OUTCOME_STATUSES = frozenset({S.CONFIRMED, S.CANCELLED})


def next_status(status: OrderStatus, trigger: str) -> OrderStatus | None:
    """Target status for a trigger, or None if the pair is not allowed."""
    return TRANSITIONS.get((status, trigger))


def allowed_triggers(status: OrderStatus) -> list[str]:
    return sorted(trigger for (current, trigger) in TRANSITIONS if current == status)


def apply(
    order: Order,
    trigger: str,
    *,
    at: datetime,
    reason: str | None = None,
    cause_id: UUID | None = None,
    **changes: object,
) -> Order | None:
    """
    Apply a trigger to an order.

    Returns:
        The transitioned order (version + 1), or None if the
        (status, trigger) pair is not in the table
    """
    target = next_status(order.status, trigger)
    if target is None:
        logger.warning(
            "Discarding transition for order %s: no transition from %s on %s",
            order.order_id,
            order.status.value,
            trigger,
            extra={
                "order_id": str(order.order_id),
                "status": order.status.value,
                "trigger": trigger,
            },
        )
        return None

    logger.debug(
        "Order %s: %s -> %s on %s",
        order.order_id,
        order.status.value,
        target.value,
        trigger,
        extra={"order_id": str(order.order_id), "trigger": trigger},
    )
    return order.transitioned(target, trigger, at, reason, cause_id, **changes)


__all__ = [
    "CANCELLABLE_STATUSES",
    "RETURN_ROUTED_STATUSES",
    "SAGA_OUTCOME_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "TRIGGER_CANCEL",
    "TRIGGER_COMPENSATE",
    "TRIGGER_DELIVER",
    "TRIGGER_INVENTORY_RELEASED",
    "TRIGGER_INVENTORY_RESERVED",
    "TRIGGER_PAYMENT_FAILED",
    "TRIGGER_PAYMENT_SUCCESS",
    "TRIGGER_REQUEST_PAYMENT",
    "TRIGGER_RESERVATION_FAILED",
    "TRIGGER_RETURN",
    "TRIGGER_RETURN_ACCEPTED",
    "TRIGGER_RETURN_REJECTED",
    "TRIGGER_SHIP",
    "allowed_triggers",
    "apply",
    "next_status",
]
