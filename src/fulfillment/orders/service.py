"""
Order service: the command side of the saga.

``create_order`` is the only synchronous step: it reserves stock, persists
the order and publishes ``order.created``. Everything after that flows
through events; callers observe the outcome by reading the order later.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar
from uuid import UUID, uuid5

from fulfillment.bus import EventBus
from fulfillment.clock import Clock, utcnow
from fulfillment.events import (
    FOLLOW_UP_NAMESPACE,
    EventEnvelope,
    EventPayload,
    OrderCancelled,
    OrderCreated,
)
from fulfillment.exceptions import (
    CancellationRejected,
    DuplicateOrder,
    InvalidTransition,
    OrderNotFound,
    StaleVersion,
)
from fulfillment.inventory import ReservationManager
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_ITEM_COUNT,
    ATTR_ORDER_ID,
    ATTR_ORDER_STATUS,
    ATTR_ORDER_TRIGGER,
)
from fulfillment.orders import state_machine
from fulfillment.orders.commands import CancelOrder, CreateOrder
from fulfillment.orders.models import Order, OrderStatus
from fulfillment.orders.repository import OrderRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

ORDER_SERVICE = "order-service"


def order_event_id(order: Order, event_type: str) -> UUID:
    """Deterministic ID for an event published for one order version."""
    return uuid5(
        FOLLOW_UP_NAMESPACE,
        f"{ORDER_SERVICE}:{order.order_id}:{order.version}:{event_type}",
    )


async def retry_on_stale_version(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
) -> T:
    """
    Run an operation again while it fails with StaleVersion.

    The operation must re-read the order on every call so each attempt
    works from the latest version.

    Raises:
        StaleVersion: If every attempt conflicts
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except StaleVersion as e:
            if attempt == max_attempts:
                raise
            logger.warning(
                "Version conflict on order %s (attempt %d/%d), retrying with a fresh read",
                e.order_id,
                attempt,
                max_attempts,
                extra={
                    "order_id": str(e.order_id),
                    "expected_version": e.expected_version,
                    "actual_version": e.actual_version,
                    "attempt": attempt,
                },
            )
    raise AssertionError("unreachable")


class OrderService:
    """
    Accepts order commands and publishes the resulting events.

    Example:
        >>> service = OrderService(repository, inventory, bus)
        >>> order = await service.create_order(
        ...     CreateOrder(user_id="user-1", items=items,
        ...                 shipping_address=address, billing_address=address)
        ... )
        >>> order.status
        <OrderStatus.INVENTORY_RESERVED: 'inventory_reserved'>

    Args:
        repository: Order storage
        inventory: Reservation manager used for the synchronous stock check
        bus: Bus receiving order events
        clock: Time source
        reservation_ttl: Hold duration for new reservations
        stale_retry_attempts: Attempts for commands that hit StaleVersion
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable tracing
    """

    def __init__(
        self,
        repository: OrderRepository,
        inventory: ReservationManager,
        bus: EventBus,
        *,
        clock: Clock | None = None,
        reservation_ttl: timedelta | None = None,
        stale_retry_attempts: int = 3,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._repository = repository
        self._inventory = inventory
        self._bus = bus
        self._clock = clock or utcnow
        self._reservation_ttl = reservation_ttl
        self._stale_retry_attempts = stale_retry_attempts

    @property
    def repository(self) -> OrderRepository:
        return self._repository

    async def _publish(self, order: Order, payload: EventPayload) -> EventEnvelope:
        envelope = EventEnvelope.wrap(
            payload,
            partition_key=str(order.order_id),
            correlation_id=order.correlation_id,
            event_id=order_event_id(order, payload.event_type),
            timestamp=self._clock(),
        )
        await self._bus.publish(envelope)
        return envelope

    async def get_order(self, order_id: UUID) -> Order:
        """
        Raises:
            OrderNotFound: If the order does not exist
        """
        order = await self._repository.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def create_order(self, command: CreateOrder) -> Order:
        """
        Reserve stock, persist the order and publish ``order.created``.

        The order is stored in ``inventory_reserved``; the order coordinator
        moves it to ``payment_processing`` once inventory confirms the hold.

        Raises:
            InsufficientStock: Stock cannot cover every item; nothing is
                persisted or published
            DuplicateOrder: An order with this ID already exists
            InvalidTransition: The transition table refuses the reservation;
                the hold is released
        """
        with self._tracer.span(
            "fulfillment.order.create",
            {ATTR_ORDER_ID: str(command.order_id), ATTR_ITEM_COUNT: len(command.items)},
        ):
            if await self._repository.get(command.order_id) is not None:
                raise DuplicateOrder(command.order_id)

            now = self._clock()
            order = Order(
                order_id=command.order_id,
                user_id=command.user_id,
                items=command.items,
                total=Order.compute_total(command.items),
                currency=command.currency,
                shipping_address=command.shipping_address,
                billing_address=command.billing_address,
                created_at=now,
                updated_at=now,
            )

            reservation = await self._inventory.reserve(
                order.order_id,
                order.items,
                self._reservation_ttl,
                correlation_id=order.correlation_id,
            )

            reserved = state_machine.apply(
                order,
                state_machine.TRIGGER_INVENTORY_RESERVED,
                at=now,
                reservation_id=reservation.reservation_id,
            )
            if reserved is None:
                await self._inventory.release(order.order_id, reason="invalid_transition")
                raise InvalidTransition(
                    order.order_id, order.status.value, state_machine.TRIGGER_INVENTORY_RESERVED
                )

            try:
                await self._repository.add(reserved)
            except DuplicateOrder:
                await self._inventory.release(order.order_id, reason="duplicate_order")
                raise

            logger.info(
                "Created order %s for user %s: total=%s %s",
                reserved.order_id,
                reserved.user_id,
                reserved.total,
                reserved.currency,
                extra={
                    "order_id": str(reserved.order_id),
                    "correlation_id": str(reserved.correlation_id),
                    "reservation_id": str(reservation.reservation_id),
                },
            )

            await self._publish(
                reserved,
                OrderCreated(
                    order_id=reserved.order_id,
                    user_id=reserved.user_id,
                    items=reserved.items,
                    total=reserved.total,
                    currency=reserved.currency,
                    reservation_id=reservation.reservation_id,
                    shipping_address=reserved.shipping_address,
                    billing_address=reserved.billing_address,
                    payment_attempt=reserved.payment_attempt,
                ),
            )
            return reserved

    async def cancel_order(self, command: CancelOrder) -> Order:
        """
        Cancel an order and publish ``order.cancelled``.

        Raises:
            OrderNotFound: If the order does not exist
            CancellationRejected: The order is past the point of
                cancellation; ``requires_return`` is set (and the order
                flagged) when it is shipped or delivered
        """
        with self._tracer.span(
            "fulfillment.order.cancel",
            {ATTR_ORDER_ID: str(command.order_id)},
        ) as span:

            async def attempt() -> tuple[Order, OrderStatus]:
                order = await self.get_order(command.order_id)
                if span:
                    span.set_attribute(ATTR_ORDER_STATUS, order.status.value)

                if order.status in state_machine.RETURN_ROUTED_STATUSES:
                    if not order.requires_return:
                        flagged = order.updated(self._clock(), requires_return=True)
                        await self._repository.save(flagged, expected_version=order.version)
                    logger.info(
                        "Cancellation of %s order %s routed to returns",
                        order.status.value,
                        order.order_id,
                        extra={"order_id": str(order.order_id), "status": order.status.value},
                    )
                    raise CancellationRejected(order.order_id, order.status.value, True)

                if order.status not in state_machine.CANCELLABLE_STATUSES:
                    raise CancellationRejected(order.order_id, order.status.value)

                cancelled = state_machine.apply(
                    order,
                    state_machine.TRIGGER_CANCEL,
                    at=self._clock(),
                    reason=command.reason,
                    cancel_reason=command.reason,
                )
                if cancelled is None:
                    raise InvalidTransition(
                        order.order_id, order.status.value, state_machine.TRIGGER_CANCEL
                    )
                await self._repository.save(cancelled, expected_version=order.version)
                return cancelled, order.status

            cancelled, previous = await retry_on_stale_version(
                attempt, max_attempts=self._stale_retry_attempts
            )

            logger.info(
                "Cancelled order %s (was %s): %s",
                cancelled.order_id,
                previous.value,
                command.reason,
                extra={"order_id": str(cancelled.order_id), "reason": command.reason},
            )
            await self._publish(
                cancelled,
                OrderCancelled(
                    order_id=cancelled.order_id,
                    user_id=cancelled.user_id,
                    reason=command.reason,
                    previous_status=previous.value,
                ),
            )
            return cancelled

    async def advance(self, order_id: UUID, trigger: str, *, reason: str | None = None) -> Order:
        """
        Apply an operator trigger (ship, deliver, return, ...).

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: The trigger is not allowed in the current status
        """
        with self._tracer.span(
            "fulfillment.order.advance",
            {ATTR_ORDER_ID: str(order_id), ATTR_ORDER_TRIGGER: trigger},
        ):

            async def attempt() -> Order:
                order = await self.get_order(order_id)
                updated = state_machine.apply(order, trigger, at=self._clock(), reason=reason)
                if updated is None:
                    raise InvalidTransition(order_id, order.status.value, trigger)
                return await self._repository.save(updated, expected_version=order.version)

            return await retry_on_stale_version(
                attempt, max_attempts=self._stale_retry_attempts
            )


__all__ = [
    "ORDER_SERVICE",
    "OrderService",
    "order_event_id",
    "retry_on_stale_version",
]
