"""
Order coordinator.

Moves orders through the state machine in response to inventory and
payment outcomes. The decision itself is a pure function of the current
order and the incoming event (``decide``); the coordinator only loads the
order, stores the decision with a version check and publishes the
follow-up.

Reactions:
    inventory.reserved            -> payment_processing (no follow-up)
    inventory.reservation.failed  -> cancelled, order.cancelled
    inventory.released            -> cancelled, order.cancelled
    payment.success               -> confirmed, order.confirmed
    payment.failed                -> failed -> cancelled, order.failed

Payment outcomes can overtake ``inventory.reserved``; an order still in
``inventory_reserved`` passes through ``payment_processing`` first.

``payment.success`` for an already cancelled order is an anomaly: the
order stays cancelled and the payment service refunds the charge.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fulfillment.bus import EventBus
from fulfillment.clock import Clock, utcnow
from fulfillment.events import (
    EventEnvelope,
    EventPayload,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OrderCancelled,
    OrderConfirmed,
    OrderFailed,
    PaymentFailed,
    PaymentSucceeded,
)
from fulfillment.exceptions import InvalidTransition, OrderNotFound
from fulfillment.idempotency import ProcessedEventStore
from fulfillment.orders import (
    ORDER_SERVICE,
    Order,
    OrderRepository,
    OrderStatus,
    retry_on_stale_version,
)
from fulfillment.orders import state_machine as sm
from fulfillment.orders.models import OrderTransition
from fulfillment.saga.coordinator import Reaction, SagaCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderDecision:
    """
    Outcome of applying one event to one order.

    Attributes:
        order: New snapshot to store, or None to leave the order unchanged
        follow_up: Event to publish, or None
        anomaly: Description of an unexpected but tolerated event
    """

    order: Order | None = None
    follow_up: EventPayload | None = None
    anomaly: str | None = None


def _announcement(order: Order, entries: list[OrderTransition]) -> EventPayload | None:
    """Follow-up event describing where a chain of transitions ended."""
    if not entries:
        return None
    first, last = entries[0], entries[-1]
    if first.trigger == sm.TRIGGER_REQUEST_PAYMENT and len(entries) > 1:
        first = entries[1]
    if last.to_status == OrderStatus.CONFIRMED:
        return OrderConfirmed(
            order_id=order.order_id,
            user_id=order.user_id,
            total=order.total,
            currency=order.currency,
            payment_id=order.payment_id,
        )
    if last.to_status == OrderStatus.CANCELLED:
        if first.trigger == sm.TRIGGER_PAYMENT_FAILED:
            return OrderFailed(
                order_id=order.order_id,
                user_id=order.user_id,
                reason=order.failure_reason or last.reason or "payment_failed",
            )
        return OrderCancelled(
            order_id=order.order_id,
            user_id=order.user_id,
            reason=last.reason or "cancelled",
            previous_status=first.from_status.value,
        )
    return None


def decide(order: Order, envelope: EventEnvelope, payload: Any, *, now: datetime) -> OrderDecision:
    """
    Pure transition function: (order, event) -> (new order?, follow-up?).

    An event already applied to the order (found in its transition history)
    yields the same follow-up again without changing the order, so a
    reaction re-run after a crash republishes what it published before.
    """
    applied = order.caused_by(envelope.event_id)
    if applied:
        return OrderDecision(follow_up=_announcement(order, applied))

    trigger = envelope.event_type
    cause = envelope.event_id

    if isinstance(payload, InventoryReserved):
        if order.status == OrderStatus.PENDING:
            reserved = sm.apply(
                order,
                trigger,
                at=now,
                cause_id=cause,
                reservation_id=payload.reservation_id,
            )
            if reserved is None:
                return OrderDecision()
            order = reserved
        if order.status == OrderStatus.INVENTORY_RESERVED:
            return OrderDecision(
                order=sm.apply(order, sm.TRIGGER_REQUEST_PAYMENT, at=now, cause_id=cause)
            )
        return OrderDecision()

    if order.status in sm.TERMINAL_STATUSES:
        if isinstance(payload, PaymentSucceeded):
            return OrderDecision(
                anomaly=(
                    f"payment {payload.payment_id} succeeded after order was cancelled; "
                    "the payment service refunds it"
                )
            )
        # Compensation echoes (inventory.released after a cancel) end here
        return OrderDecision()

    if isinstance(payload, (PaymentSucceeded, PaymentFailed)) and (
        order.status == OrderStatus.INVENTORY_RESERVED
    ):
        # Payment outcome overtook inventory.reserved
        processing = sm.apply(order, sm.TRIGGER_REQUEST_PAYMENT, at=now, cause_id=cause)
        if processing is None:
            return OrderDecision()
        order = processing

    if isinstance(payload, (InventoryReservationFailed, InventoryReleased)):
        prefix = (
            "inventory_reservation_failed"
            if isinstance(payload, InventoryReservationFailed)
            else "inventory_released"
        )
        reason = f"{prefix}: {payload.reason}"
        cancelled = sm.apply(
            order, trigger, at=now, reason=reason, cause_id=cause, cancel_reason=reason
        )
        if cancelled is None:
            return OrderDecision()
        return OrderDecision(
            order=cancelled,
            follow_up=_announcement(cancelled, cancelled.caused_by(cause)),
        )

    if isinstance(payload, PaymentSucceeded):
        confirmed = sm.apply(order, trigger, at=now, cause_id=cause, payment_id=payload.payment_id)
        if confirmed is None:
            return OrderDecision()
        return OrderDecision(
            order=confirmed,
            follow_up=_announcement(confirmed, confirmed.caused_by(cause)),
        )

    if isinstance(payload, PaymentFailed):
        failed = sm.apply(
            order,
            trigger,
            at=now,
            reason=payload.reason,
            cause_id=cause,
            failure_reason=payload.reason,
            payment_id=payload.payment_id,
        )
        if failed is None:
            return OrderDecision()
        cancelled = sm.apply(
            failed,
            sm.TRIGGER_COMPENSATE,
            at=now,
            reason=f"payment_failed: {payload.reason}",
            cause_id=cause,
            cancel_reason=f"payment_failed: {payload.reason}",
        )
        if cancelled is None:
            raise InvalidTransition(order.order_id, failed.status.value, sm.TRIGGER_COMPENSATE)
        return OrderDecision(
            order=cancelled,
            follow_up=_announcement(cancelled, cancelled.caused_by(cause)),
        )

    return OrderDecision()


class OrderCoordinator(SagaCoordinator):
    """
    Order-service participant of the fulfillment saga.

    Args:
        bus: Event bus
        processed: Processed-event store for deduplication
        repository: Order storage
        clock: Time source for transition timestamps
        stale_retry_attempts: Fresh-read retries on version conflicts
            before the bus redelivers the event
    """

    consumer_group = ORDER_SERVICE

    def __init__(
        self,
        bus: EventBus,
        processed: ProcessedEventStore,
        repository: OrderRepository,
        *,
        clock: Clock | None = None,
        stale_retry_attempts: int = 3,
        **kwargs: Any,
    ) -> None:
        self._repository = repository
        self._clock = clock or utcnow
        self._stale_retry_attempts = stale_retry_attempts
        super().__init__(bus, processed, **kwargs)
        self._stats["anomalies"] = 0

    def reactions(self) -> dict[str, Reaction]:
        return {
            InventoryReserved.event_type: self._react,
            InventoryReservationFailed.event_type: self._react,
            InventoryReleased.event_type: self._react,
            PaymentSucceeded.event_type: self._react,
            PaymentFailed.event_type: self._react,
        }

    async def _react(self, envelope: EventEnvelope, payload: Any) -> EventPayload | None:
        async def attempt() -> OrderDecision:
            order = await self._repository.get(payload.order_id)
            if order is None:
                raise OrderNotFound(payload.order_id)
            decision = decide(order, envelope, payload, now=self._clock())
            if decision.order is not None:
                await self._repository.save(decision.order, expected_version=order.version)
                logger.info(
                    "Order %s moved %s -> %s on %s",
                    order.order_id,
                    order.status.value,
                    decision.order.status.value,
                    envelope.event_type,
                    extra={
                        "order_id": str(order.order_id),
                        "event_id": str(envelope.event_id),
                        "status": decision.order.status.value,
                    },
                )
            return decision

        decision = await retry_on_stale_version(
            attempt, max_attempts=self._stale_retry_attempts
        )
        if decision.anomaly:
            self._stats["anomalies"] += 1
            logger.warning(
                "Anomaly on order %s: %s",
                payload.order_id,
                decision.anomaly,
                extra={
                    "order_id": str(payload.order_id),
                    "event_id": str(envelope.event_id),
                    "event_type": envelope.event_type,
                },
            )
        return decision.follow_up


__all__ = ["OrderCoordinator", "OrderDecision", "decide"]
