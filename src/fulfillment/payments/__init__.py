"""
Payments: records, gateway boundary and the charging service.

Example:
    >>> from fulfillment.payments import InMemoryPaymentGateway, PaymentService
"""

from fulfillment.payments.gateway import GatewayResult, InMemoryPaymentGateway, PaymentGateway
from fulfillment.payments.models import (
    cancellation_key,
    PaymentRecord,
    PaymentStatus,
    payment_id_for_key,
    payment_idempotency_key,
    refund_idempotency_key,
)
from fulfillment.payments.repository import (
    InMemoryPaymentRecordRepository,
    PaymentRecordRepository,
)
from fulfillment.payments.service import PaymentService

__all__ = [
    "GatewayResult",
    "InMemoryPaymentGateway",
    "InMemoryPaymentRecordRepository",
    "PaymentGateway",
    "PaymentRecord",
    "PaymentRecordRepository",
    "PaymentService",
    "PaymentStatus",
    "cancellation_key",
    "payment_id_for_key",
    "payment_idempotency_key",
    "refund_idempotency_key",
]
