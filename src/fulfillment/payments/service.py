"""
Payment service.

Every charge runs behind an idempotency key derived from the order ID and
the payment attempt, so a redelivered ``order.created`` never charges
twice:

    reserve key --fresh--> gateway.charge --> record + complete key
                --completed--> return the stored record
                --in flight--> IdempotencyKeyInFlight (retried by the bus)

A declined charge is a normal outcome (a failed record). Timeouts and
gateway outages release the key and raise ``TransientGatewayError`` for the
bus to retry.
"""

import asyncio
import logging
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from fulfillment.clock import Clock, utcnow
from fulfillment.exceptions import PaymentDeclined, TransientGatewayError
from fulfillment.idempotency import IdempotencyKeyStore
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_IDEMPOTENCY_KEY,
    ATTR_ORDER_ID,
    ATTR_PAYMENT_STATUS,
)
from fulfillment.payments.gateway import PaymentGateway
from fulfillment.payments.models import (
    cancellation_key,
    PaymentRecord,
    PaymentStatus,
    payment_id_for_key,
    payment_idempotency_key,
    refund_idempotency_key,
)
from fulfillment.payments.repository import PaymentRecordRepository

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Charges and refunds orders through a payment gateway.

    Example:
        >>> service = PaymentService(gateway, records, keys)
        >>> record = await service.charge(order_id, Decimal("59.90"), "USD", attempt=1)
        >>> record.status
        <PaymentStatus.SUCCEEDED: 'succeeded'>

    Args:
        gateway: Payment gateway
        records: Payment record storage
        keys: Idempotency key store
        clock: Time source
        gateway_timeout: Seconds allowed for one gateway call
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable tracing
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        records: PaymentRecordRepository,
        keys: IdempotencyKeyStore,
        *,
        clock: Clock | None = None,
        gateway_timeout: float = 30.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._gateway = gateway
        self._records = records
        self._keys = keys
        self._clock = clock or utcnow
        self._gateway_timeout = gateway_timeout

    @property
    def records(self) -> PaymentRecordRepository:
        return self._records

    async def charge(
        self,
        order_id: UUID,
        amount: Decimal,
        currency: str,
        attempt: int = 1,
    ) -> PaymentRecord:
        """
        Charge an order once per attempt.

        Returns:
            The attempt's record, succeeded or failed

        Raises:
            IdempotencyKeyInFlight: Another worker is executing this attempt
            TransientGatewayError: The gateway timed out or is unavailable
        """
        key = payment_idempotency_key(order_id, attempt)
        with self._tracer.span(
            "fulfillment.payment.charge",
            {ATTR_ORDER_ID: str(order_id), ATTR_IDEMPOTENCY_KEY: key},
        ) as span:
            reservation = await self._keys.reserve_key(key)
            if not reservation.fresh:
                record = await self._records.get_by_key(key)
                if record is None:
                    raise RuntimeError(f"Completed payment key '{key}' has no payment record")
                logger.info(
                    "Payment %s for order %s already executed (%s), returning stored result",
                    record.payment_id,
                    order_id,
                    record.status.value,
                    extra={"order_id": str(order_id), "idempotency_key": key},
                )
                if span:
                    span.set_attribute(ATTR_PAYMENT_STATUS, record.status.value)
                return record

            # A pending record left by a crashed owner is reused
            record = await self._records.get_by_key(key)
            if record is None:
                now = self._clock()
                record = await self._records.add(
                    PaymentRecord(
                        payment_id=payment_id_for_key(key),
                        idempotency_key=key,
                        order_id=order_id,
                        amount=amount,
                        currency=currency,
                        status=PaymentStatus.PENDING,
                        attempt=attempt,
                        created_at=now,
                        updated_at=now,
                    )
                )

            try:
                async with asyncio.timeout(self._gateway_timeout):
                    result = await self._gateway.charge(
                        idempotency_key=key,
                        order_id=order_id,
                        amount=amount,
                        currency=currency,
                    )
            except PaymentDeclined as e:
                record = await self._records.update(
                    replace(
                        record,
                        status=PaymentStatus.FAILED,
                        failure_reason=e.reason,
                        updated_at=self._clock(),
                    )
                )
                await self._keys.complete_key(key, self._result_of(record))
                logger.info(
                    "Payment declined for order %s: %s",
                    order_id,
                    e.reason,
                    extra={"order_id": str(order_id), "payment_id": str(record.payment_id)},
                )
            except TimeoutError as e:
                await self._keys.release_key(key)
                raise TransientGatewayError(
                    order_id, f"charge timed out after {self._gateway_timeout}s"
                ) from e
            except TransientGatewayError:
                await self._keys.release_key(key)
                raise
            except Exception as e:
                await self._keys.release_key(key)
                raise TransientGatewayError(order_id, str(e)) from e
            else:
                record = await self._records.update(
                    replace(
                        record,
                        status=PaymentStatus.SUCCEEDED,
                        gateway_reference=result.reference,
                        updated_at=self._clock(),
                    )
                )
                await self._keys.complete_key(key, self._result_of(record))
                logger.info(
                    "Payment captured for order %s: %s %s",
                    order_id,
                    amount,
                    currency,
                    extra={"order_id": str(order_id), "payment_id": str(record.payment_id)},
                )

            if span:
                span.set_attribute(ATTR_PAYMENT_STATUS, record.status.value)
            return record

    async def refund(self, order_id: UUID) -> list[PaymentRecord]:
        """
        Refund every succeeded payment of an order.

        Returns:
            Records refunded by this call (empty when nothing is left to refund)

        Raises:
            TransientGatewayError: The gateway timed out or is unavailable
        """
        with self._tracer.span("fulfillment.payment.refund", {ATTR_ORDER_ID: str(order_id)}):
            refunded: list[PaymentRecord] = []
            for record in await self._records.list_for_order(order_id, PaymentStatus.SUCCEEDED):
                key = refund_idempotency_key(record.payment_id)
                reservation = await self._keys.reserve_key(key)
                if reservation.fresh:
                    try:
                        async with asyncio.timeout(self._gateway_timeout):
                            result = await self._gateway.refund(
                                idempotency_key=key,
                                charge_reference=record.gateway_reference or "",
                                amount=record.amount,
                                currency=record.currency,
                            )
                    except TimeoutError as e:
                        await self._keys.release_key(key)
                        raise TransientGatewayError(
                            order_id, f"refund timed out after {self._gateway_timeout}s"
                        ) from e
                    except Exception:
                        await self._keys.release_key(key)
                        raise
                    reference = result.reference
                else:
                    reference = (reservation.result or {}).get("refund_reference")

                updated = await self._records.update(
                    replace(
                        record,
                        status=PaymentStatus.REFUNDED,
                        refund_reference=reference,
                        updated_at=self._clock(),
                    )
                )
                if reservation.fresh:
                    await self._keys.complete_key(key, self._result_of(updated))
                refunded.append(updated)
                logger.info(
                    "Refunded payment %s for order %s",
                    record.payment_id,
                    order_id,
                    extra={"order_id": str(order_id), "payment_id": str(record.payment_id)},
                )
            return refunded

    async def record_cancellation(self, order_id: UUID) -> None:
        """
        Remember that the order was cancelled.

        Charges executed afterwards (a replayed or late ``order.created``)
        are refunded or skipped instead of leaving money captured.
        """
        key = cancellation_key(order_id)
        reservation = await self._keys.reserve_key(key)
        if reservation.fresh:
            await self._keys.complete_key(
                key, {"order_id": str(order_id), "cancelled_at": self._clock().isoformat()}
            )

    async def is_cancelled(self, order_id: UUID) -> bool:
        return await self._keys.get_result(cancellation_key(order_id)) is not None

    async def get_payments(self, order_id: UUID) -> list[PaymentRecord]:
        return await self._records.list_for_order(order_id)

    @staticmethod
    def _result_of(record: PaymentRecord) -> dict[str, str | None]:
        return {
            "payment_id": str(record.payment_id),
            "status": record.status.value,
            "gateway_reference": record.gateway_reference,
            "refund_reference": record.refund_reference,
            "failure_reason": record.failure_reason,
        }


__all__ = ["PaymentService"]
