"""
Order persistence with optimistic concurrency.

``save`` is a compare-and-swap on the order's version: it succeeds only if
the stored version equals ``expected_version``, otherwise it raises
``StaleVersion`` and the caller re-reads and retries.
"""

import asyncio
from typing import Protocol, runtime_checkable
from uuid import UUID

from fulfillment.exceptions import DuplicateOrder, OrderNotFound, StaleVersion
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_EXPECTED_VERSION,
    ATTR_ORDER_ID,
)
from fulfillment.orders.models import Order, OrderStatus


@runtime_checkable
class OrderRepository(Protocol):
    """Protocol for order repositories."""

    async def add(self, order: Order) -> Order:
        """
        Store a new order.

        Raises:
            DuplicateOrder: An order with this ID already exists
        """
        ...

    async def get(self, order_id: UUID) -> Order | None:
        """Current snapshot of an order, or None."""
        ...

    async def save(self, order: Order, expected_version: int) -> Order:
        """
        Replace an order if its stored version equals expected_version.

        Raises:
            OrderNotFound: The order does not exist
            StaleVersion: The stored version differs from expected_version
        """
        ...

    async def list_orders(self, status: OrderStatus | None = None) -> list[Order]:
        """Orders, optionally filtered by status."""
        ...


class InMemoryOrderRepository:
    """
    In-memory order repository.

    Example:
        >>> repo = InMemoryOrderRepository()
        >>> await repo.add(order)
        >>> confirmed = order.transitioned(OrderStatus.CONFIRMED, "payment.success", now)
        >>> await repo.save(confirmed, expected_version=order.version)
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._orders: dict[UUID, Order] = {}
        self._lock = asyncio.Lock()

    async def add(self, order: Order) -> Order:
        with self._tracer.span(
            "fulfillment.order_repository.add",
            {ATTR_ORDER_ID: str(order.order_id), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                if order.order_id in self._orders:
                    raise DuplicateOrder(order.order_id)
                self._orders[order.order_id] = order
                return order

    async def get(self, order_id: UUID) -> Order | None:
        return self._orders.get(order_id)

    async def save(self, order: Order, expected_version: int) -> Order:
        with self._tracer.span(
            "fulfillment.order_repository.save",
            {
                ATTR_ORDER_ID: str(order.order_id),
                ATTR_EXPECTED_VERSION: expected_version,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                current = self._orders.get(order.order_id)
                if current is None:
                    raise OrderNotFound(order.order_id)
                if current.version != expected_version:
                    raise StaleVersion(order.order_id, expected_version, current.version)
                self._orders[order.order_id] = order
                return order

    async def list_orders(self, status: OrderStatus | None = None) -> list[Order]:
        return [o for o in self._orders.values() if status is None or o.status == status]

    async def clear(self) -> None:
        async with self._lock:
            self._orders.clear()


__all__ = ["InMemoryOrderRepository", "OrderRepository"]
