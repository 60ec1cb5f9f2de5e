"""
Payment gateway boundary.

Declines are raised as ``PaymentDeclined``; timeouts and outages as
``TransientGatewayError`` (or any exception the service wraps as one).
Gateways must deduplicate on the idempotency key: a key whose owner
crashed is executed again with the same key.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID, uuid4

from fulfillment.exceptions import PaymentDeclined, TransientGatewayError


@dataclass(frozen=True)
class GatewayResult:
    """
    Successful gateway operation.

    Attributes:
        reference: Gateway-side reference of the charge or refund
        amount: Amount processed
    """

    reference: str
    amount: Decimal


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol for payment gateways."""

    async def charge(
        self,
        *,
        idempotency_key: str,
        order_id: UUID,
        amount: Decimal,
        currency: str,
    ) -> GatewayResult:
        """
        Capture a payment.

        Raises:
            PaymentDeclined: The charge was refused
            TransientGatewayError: The gateway is unavailable
        """
        ...

    async def refund(
        self,
        *,
        idempotency_key: str,
        charge_reference: str,
        amount: Decimal,
        currency: str,
    ) -> GatewayResult:
        """Refund a captured payment."""
        ...


class InMemoryPaymentGateway:
    """
    Deterministic gateway for tests and local runs.

    Deduplicates on idempotency key: charging the same key twice returns
    the first result and captures money once.

    Example:
        >>> gateway = InMemoryPaymentGateway()
        >>> gateway.decline(order_id, "insufficient_funds")
        >>> gateway.fail_next(2)  # two transient failures, then success
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self._charges: dict[str, GatewayResult] = {}
        self._refunds: dict[str, GatewayResult] = {}
        self._declines: dict[UUID, str] = {}
        self._decline_all: str | None = None
        self._transient_failures = 0
        self.charge_calls = 0
        self.refund_calls = 0

    def decline(self, order_id: UUID, reason: str = "card_declined") -> None:
        """Decline every charge for this order."""
        self._declines[order_id] = reason

    def decline_all(self, reason: str | None = "card_declined") -> None:
        """Decline every charge (None restores approvals)."""
        self._decline_all = reason

    def fail_next(self, count: int = 1) -> None:
        """Fail the next ``count`` calls with TransientGatewayError."""
        self._transient_failures = count

    @property
    def charges(self) -> dict[str, GatewayResult]:
        """Captured charges by idempotency key."""
        return dict(self._charges)

    @property
    def refunds(self) -> dict[str, GatewayResult]:
        return dict(self._refunds)

    async def _simulate(self, order_id: UUID | None) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._transient_failures > 0:
            self._transient_failures -= 1
            raise TransientGatewayError(order_id or uuid4(), "gateway unavailable")

    async def charge(
        self,
        *,
        idempotency_key: str,
        order_id: UUID,
        amount: Decimal,
        currency: str,
    ) -> GatewayResult:
        self.charge_calls += 1
        await self._simulate(order_id)
        if idempotency_key in self._charges:
            return self._charges[idempotency_key]

        reason = self._declines.get(order_id) or self._decline_all
        if reason:
            raise PaymentDeclined(order_id, reason)

        result = GatewayResult(reference=f"ch_{uuid4().hex[:16]}", amount=amount)
        self._charges[idempotency_key] = result
        return result

    async def refund(
        self,
        *,
        idempotency_key: str,
        charge_reference: str,
        amount: Decimal,
        currency: str,
    ) -> GatewayResult:
        self.refund_calls += 1
        await self._simulate(None)
        if idempotency_key in self._refunds:
            return self._refunds[idempotency_key]
        result = GatewayResult(reference=f"re_{uuid4().hex[:16]}", amount=amount)
        self._refunds[idempotency_key] = result
        return result


__all__ = ["GatewayResult", "InMemoryPaymentGateway", "PaymentGateway"]
