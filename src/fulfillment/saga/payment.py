"""
Payment coordinator.

Reactions:
    order.created    -> charge once per attempt; payment.success | payment.failed
    order.cancelled  -> remember the cancellation, refund any captured payment

An ``order.created`` handled after the order's ``order.cancelled`` (a
dead letter replayed by an operator, for instance) is not charged. A charge
that completes while the cancellation is being recorded elsewhere is
refunded straight away.
"""

import logging
from typing import Any

from fulfillment.bus import EventBus
from fulfillment.events import (
    EventEnvelope,
    EventPayload,
    OrderCancelled,
    OrderCreated,
    PaymentFailed,
    PaymentSucceeded,
)
from fulfillment.idempotency import ProcessedEventStore
from fulfillment.payments import PaymentService, PaymentStatus
from fulfillment.saga.coordinator import Reaction, SagaCoordinator

logger = logging.getLogger(__name__)

PAYMENT_SERVICE = "payment-service"


class PaymentCoordinator(SagaCoordinator):
    """Payment-service participant of the fulfillment saga."""

    consumer_group = PAYMENT_SERVICE

    def __init__(
        self,
        bus: EventBus,
        processed: ProcessedEventStore,
        payments: PaymentService,
        **kwargs: Any,
    ) -> None:
        self._payments = payments
        super().__init__(bus, processed, **kwargs)

    def reactions(self) -> dict[str, Reaction]:
        return {
            OrderCreated.event_type: self._on_order_created,
            OrderCancelled.event_type: self._on_order_cancelled,
        }

    async def _on_order_created(
        self, envelope: EventEnvelope, payload: OrderCreated
    ) -> EventPayload | None:
        if await self._payments.is_cancelled(payload.order_id):
            logger.warning(
                "Not charging order %s: it was cancelled before payment started",
                payload.order_id,
                extra={"order_id": str(payload.order_id), "event_id": str(envelope.event_id)},
            )
            return None

        record = await self._payments.charge(
            payload.order_id,
            payload.total,
            payload.currency,
            attempt=payload.payment_attempt,
        )
        if record.status == PaymentStatus.SUCCEEDED and await self._payments.is_cancelled(
            payload.order_id
        ):
            await self._payments.refund(payload.order_id)
            logger.warning(
                "Refunded payment %s: order %s was cancelled while it was being charged",
                record.payment_id,
                payload.order_id,
                extra={"order_id": str(payload.order_id), "payment_id": str(record.payment_id)},
            )

        if record.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            return PaymentSucceeded(
                order_id=record.order_id,
                payment_id=record.payment_id,
                idempotency_key=record.idempotency_key,
                amount=record.amount,
                currency=record.currency,
                gateway_reference=record.gateway_reference,
            )
        return PaymentFailed(
            order_id=record.order_id,
            payment_id=record.payment_id,
            idempotency_key=record.idempotency_key,
            amount=record.amount,
            currency=record.currency,
            reason=record.failure_reason or "declined",
        )

    async def _on_order_cancelled(
        self, envelope: EventEnvelope, payload: OrderCancelled
    ) -> EventPayload | None:
        await self._payments.record_cancellation(payload.order_id)
        await self._payments.refund(payload.order_id)
        return None


__all__ = ["PAYMENT_SERVICE", "PaymentCoordinator"]
