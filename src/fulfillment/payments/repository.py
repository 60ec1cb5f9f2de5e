"""
Payment record storage.

Records form an audit trail: they are added and updated, never deleted.
"""

import asyncio
from typing import Protocol, runtime_checkable
from uuid import UUID

from fulfillment.payments.models import PaymentRecord, PaymentStatus


@runtime_checkable
class PaymentRecordRepository(Protocol):
    """Protocol for payment record repositories."""

    async def add(self, record: PaymentRecord) -> PaymentRecord:
        """
        Store a new record.

        Raises:
            ValueError: A record with the same payment ID or key exists
        """
        ...

    async def update(self, record: PaymentRecord) -> PaymentRecord:
        """Replace an existing record (matched by payment_id)."""
        ...

    async def get(self, payment_id: UUID) -> PaymentRecord | None: ...

    async def get_by_key(self, idempotency_key: str) -> PaymentRecord | None: ...

    async def list_for_order(
        self,
        order_id: UUID,
        status: PaymentStatus | None = None,
    ) -> list[PaymentRecord]: ...


class InMemoryPaymentRecordRepository:
    """In-memory payment record repository."""

    def __init__(self) -> None:
        self._records: dict[UUID, PaymentRecord] = {}
        self._by_key: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: PaymentRecord) -> PaymentRecord:
        async with self._lock:
            if record.payment_id in self._records:
                raise ValueError(f"Payment record already exists: {record.payment_id}")
            if record.idempotency_key in self._by_key:
                raise ValueError(
                    f"Payment record already exists for key '{record.idempotency_key}'"
                )
            self._records[record.payment_id] = record
            self._by_key[record.idempotency_key] = record.payment_id
            return record

    async def update(self, record: PaymentRecord) -> PaymentRecord:
        async with self._lock:
            if record.payment_id not in self._records:
                raise KeyError(f"Unknown payment record: {record.payment_id}")
            self._records[record.payment_id] = record
            return record

    async def get(self, payment_id: UUID) -> PaymentRecord | None:
        return self._records.get(payment_id)

    async def get_by_key(self, idempotency_key: str) -> PaymentRecord | None:
        payment_id = self._by_key.get(idempotency_key)
        return self._records.get(payment_id) if payment_id is not None else None

    async def list_for_order(
        self,
        order_id: UUID,
        status: PaymentStatus | None = None,
    ) -> list[PaymentRecord]:
        return sorted(
            (
                r
                for r in self._records.values()
                if r.order_id == order_id and (status is None or r.status == status)
            ),
            key=lambda r: (r.attempt, r.created_at),
        )

    async def list_all(self) -> list[PaymentRecord]:
        return list(self._records.values())


__all__ = ["InMemoryPaymentRecordRepository", "PaymentRecordRepository"]
