"""Payment records."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid5

from fulfillment.events import FOLLOW_UP_NAMESPACE


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


def payment_idempotency_key(order_id: UUID, attempt: int) -> str:
    """Idempotency key for one payment attempt of an order."""
    return f"payment:{order_id}:{attempt}"


def refund_idempotency_key(payment_id: UUID) -> str:
    return f"refund:{payment_id}"


def cancellation_key(order_id: UUID) -> str:
    """Key recording that the payment service has seen the order cancelled."""
    return f"cancelled:{order_id}"


def payment_id_for_key(idempotency_key: str) -> UUID:
    """Payment ID derived from its idempotency key, stable across re-executions."""
    return uuid5(FOLLOW_UP_NAMESPACE, idempotency_key)


@dataclass(frozen=True)
class PaymentRecord:
    """
    Audit record of one payment attempt.

    Records are created per attempt and never deleted. One idempotency key
    maps to exactly one record.

    Attributes:
        payment_id: Unique payment identifier
        idempotency_key: Key derived from (order_id, attempt)
        order_id: Order being paid for
        amount: Charged amount
        currency: ISO 4217 currency code
        status: pending, succeeded, failed or refunded
        attempt: Payment attempt number for the order
        created_at: When the attempt started
        updated_at: When the record last changed
        gateway_reference: Gateway charge reference
        failure_reason: Decline reason for failed attempts
        refund_reference: Gateway refund reference
    """

    payment_id: UUID
    idempotency_key: str
    order_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    attempt: int
    created_at: datetime
    updated_at: datetime
    gateway_reference: str | None = None
    failure_reason: str | None = None
    refund_reference: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


__all__ = [
    "PaymentRecord",
    "PaymentStatus",
    "payment_id_for_key",
    "payment_idempotency_key",
    "refund_idempotency_key",
]
