"""
Inventory reservation manager.

The manager is the only component that mutates stock counters. Every
mutation runs under the keyed locks of the stock counters it touches
(``stock:<sku>@<warehouse>``) and of the owning order (``order:<id>``),
acquired together in sorted key order.

Reservation lifecycle:
    reserve()  -> active
    finalize() -> fulfilled   (on_hand and reserved both decrease)
    release()  -> released    (reserved decreases)
    expiry     -> released    (reason "expired", reported by sweep_expired)
"""

import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta
from uuid import UUID, uuid4

from fulfillment.clock import Clock, utcnow
from fulfillment.exceptions import InsufficientStock, ReservationExpired, ReservationNotFound
from fulfillment.inventory.models import (
    RELEASE_REASON_EXPIRED,
    Reservation,
    ReservationStatus,
    StockLevel,
)
from fulfillment.locks import KeyedLockManager, order_lock_key, stock_lock_key
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import (
    ATTR_ITEM_COUNT,
    ATTR_ORDER_ID,
    ATTR_RESERVATION_ID,
)
from fulfillment.types import LineItem, ReservationItem

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=15)

StockKey = tuple[str, str]


def _requested_quantities(items: Iterable[LineItem] | Mapping[str, int]) -> dict[str, int]:
    """Aggregate requested quantities per SKU."""
    requested: dict[str, int] = {}
    if isinstance(items, Mapping):
        pairs = list(items.items())
    else:
        pairs = [(item.sku, item.quantity) for item in items]

    for sku, quantity in pairs:
        if quantity <= 0:
            raise ValueError(f"Requested quantity for {sku} must be positive, got {quantity}")
        requested[sku] = requested.get(sku, 0) + quantity

    if not requested:
        raise ValueError("A reservation needs at least one item")
    return requested


class ReservationManager:
    """
    Owns stock counters and reservations.

    Example:
        >>> manager = ReservationManager()
        >>> await manager.set_stock("SKU-A", "wh-1", 5)
        >>> reservation = await manager.reserve(order_id, {"SKU-A": 2})
        >>> await manager.available("SKU-A")
        3
        >>> await manager.finalize(order_id)

    Args:
        clock: Time source used for expiry
        locks: Keyed lock manager (a private one is created if omitted)
        default_ttl: TTL applied when reserve() is called without one
        lock_timeout: Seconds to wait for stock/order locks
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable tracing
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        locks: KeyedLockManager | None = None,
        default_ttl: timedelta = DEFAULT_RESERVATION_TTL,
        lock_timeout: float | None = 10.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if default_ttl <= timedelta(0):
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._clock = clock or utcnow
        self._locks = locks or KeyedLockManager(tracer=self._tracer)
        self._default_ttl = default_ttl
        self._lock_timeout = lock_timeout

        self._stock: dict[StockKey, StockLevel] = {}
        # Latest reservation per order
        self._reservations: dict[UUID, Reservation] = {}
        # Released by expiry and not yet reported by sweep_expired()
        self._expired_unannounced: list[Reservation] = []

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    # -- locking -----------------------------------------------------------

    def _warehouse_keys(self, skus: Iterable[str]) -> set[StockKey]:
        wanted = set(skus)
        return {key for key in self._stock if key[0] in wanted}

    @staticmethod
    def _held_keys(reservation: Reservation | None) -> set[StockKey]:
        if reservation is None or not reservation.is_active:
            return set()
        return {(item.sku, item.warehouse_id) for item in reservation.items}

    @asynccontextmanager
    async def _locked(
        self,
        order_ids: Iterable[UUID],
        stock_keys: Iterable[StockKey],
    ) -> AsyncIterator[None]:
        keys = [order_lock_key(order_id) for order_id in order_ids]
        keys.extend(stock_lock_key(sku, warehouse) for sku, warehouse in stock_keys)
        async with self._locks.acquire_many(keys, timeout=self._lock_timeout):
            yield

    # -- stock ---------------------------------------------------------------

    async def set_stock(self, sku: str, warehouse_id: str, on_hand: int) -> StockLevel:
        """
        Set the physical quantity of a SKU at a warehouse.

        Raises:
            ValueError: If on_hand is negative or below the reserved quantity
        """
        if on_hand < 0:
            raise ValueError(f"on_hand must be non-negative, got {on_hand}")
        async with self._locked((), [(sku, warehouse_id)]):
            current = self._stock.get((sku, warehouse_id)) or StockLevel(sku, warehouse_id)
            if on_hand < current.reserved:
                raise ValueError(
                    f"Cannot set on_hand of {sku}@{warehouse_id} to {on_hand}: "
                    f"{current.reserved} units are reserved"
                )
            level = replace(current, on_hand=on_hand)
            self._stock[(sku, warehouse_id)] = level
            return level

    async def add_stock(self, sku: str, warehouse_id: str, quantity: int) -> StockLevel:
        """Receive ``quantity`` units of a SKU at a warehouse."""
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        async with self._locked((), [(sku, warehouse_id)]):
            current = self._stock.get((sku, warehouse_id)) or StockLevel(sku, warehouse_id)
            level = replace(current, on_hand=current.on_hand + quantity)
            self._stock[(sku, warehouse_id)] = level
            return level

    async def get_stock(self, sku: str, warehouse_id: str) -> StockLevel | None:
        return self._stock.get((sku, warehouse_id))

    async def list_stock(self, sku: str | None = None) -> list[StockLevel]:
        """Stock levels ordered by (sku, warehouse), optionally for one SKU."""
        return [
            self._stock[key]
            for key in sorted(self._stock)
            if sku is None or key[0] == sku
        ]

    async def available(self, sku: str) -> int:
        """Units of a SKU not held by any reservation, summed over warehouses."""
        return sum(level.available for key, level in self._stock.items() if key[0] == sku)

    # -- reservations ----------------------------------------------------------

    async def get_reservation(self, order_id: UUID) -> Reservation | None:
        """Latest reservation for an order, or None."""
        return self._reservations.get(order_id)

    async def list_reservations(
        self,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]:
        return [r for r in self._reservations.values() if status is None or r.status == status]

    async def reserve(
        self,
        order_id: UUID,
        items: Iterable[LineItem] | Mapping[str, int],
        ttl: timedelta | None = None,
        *,
        correlation_id: UUID | None = None,
    ) -> Reservation:
        """
        Hold stock for every item of an order, or for none of them.

        Quantities are allocated across warehouses in warehouse-id order.
        An order holds at most one active reservation; reserving again
        while it is active returns the existing one unchanged.

        Args:
            order_id: Order the stock is held for
            items: Line items, or a mapping of SKU to quantity
            ttl: Hold duration (defaults to the manager's default TTL)
            correlation_id: Saga correlation ID recorded on the reservation

        Returns:
            The active reservation

        Raises:
            InsufficientStock: If any SKU cannot be fully satisfied; no
                counter is changed
            LockAcquisitionError: If the stock locks are not acquired in time
        """
        requested = _requested_quantities(items)
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive, got {ttl}")

        with self._tracer.span(
            "fulfillment.inventory.reserve",
            {ATTR_ORDER_ID: str(order_id), ATTR_ITEM_COUNT: len(requested)},
        ):
            await self._expire_contended(set(requested), exclude=order_id)

            while True:
                existing = self._reservations.get(order_id)
                stock_keys = self._warehouse_keys(requested) | self._held_keys(existing)
                async with self._locked([order_id], stock_keys):
                    if self._reservations.get(order_id) is not existing:
                        continue
                    if existing is not None and existing.is_active:
                        if not existing.is_expired(self._clock()):
                            return existing
                        self._expire(existing)
                    if existing is not None and existing.status == ReservationStatus.FULFILLED:
                        return existing
                    return self._allocate(order_id, requested, ttl, correlation_id)

    def _allocate(
        self,
        order_id: UUID,
        requested: dict[str, int],
        ttl: timedelta,
        correlation_id: UUID | None,
    ) -> Reservation:
        plan: list[ReservationItem] = []
        for sku in sorted(requested):
            remaining = requested[sku]
            levels = [self._stock[key] for key in sorted(self._warehouse_keys([sku]))]
            total = sum(max(level.available, 0) for level in levels)
            if total < remaining:
                logger.info(
                    "Insufficient stock for order %s: sku=%s requested=%d available=%d",
                    order_id,
                    sku,
                    requested[sku],
                    total,
                    extra={"order_id": str(order_id), "sku": sku},
                )
                raise InsufficientStock(order_id, sku, requested[sku], total)
            for level in levels:
                if remaining == 0:
                    break
                take = min(level.available, remaining)
                if take <= 0:
                    continue
                plan.append(
                    ReservationItem(sku=sku, warehouse_id=level.warehouse_id, quantity=take)
                )
                remaining -= take

        # Every SKU is satisfiable; apply the whole plan
        for item in plan:
            key = (item.sku, item.warehouse_id)
            level = self._stock[key]
            self._stock[key] = replace(level, reserved=level.reserved + item.quantity)

        now = self._clock()
        reservation = Reservation(
            reservation_id=uuid4(),
            order_id=order_id,
            items=tuple(plan),
            status=ReservationStatus.ACTIVE,
            expires_at=now + ttl,
            created_at=now,
            correlation_id=correlation_id,
        )
        self._reservations[order_id] = reservation
        logger.info(
            "Reserved stock for order %s: reservation=%s items=%d expires_at=%s",
            order_id,
            reservation.reservation_id,
            len(plan),
            reservation.expires_at.isoformat(),
            extra={
                "order_id": str(order_id),
                "reservation_id": str(reservation.reservation_id),
            },
        )
        return reservation

    async def finalize(self, order_id: UUID) -> Reservation:
        """
        Turn an active reservation into a permanent stock decrement.

        Finalizing a fulfilled reservation again returns it unchanged.

        Raises:
            ReservationExpired: The hold expired; it is released first if
                it was still active
            ReservationNotFound: No reservation exists, or it was released
                for a reason other than expiry
        """
        with self._tracer.span(
            "fulfillment.inventory.finalize",
            {ATTR_ORDER_ID: str(order_id)},
        ) as span:
            while True:
                existing = self._reservations.get(order_id)
                if existing is None:
                    raise ReservationNotFound(order_id)
                async with self._locked([order_id], self._held_keys(existing)):
                    if self._reservations.get(order_id) is not existing:
                        continue
                    if span:
                        span.set_attribute(ATTR_RESERVATION_ID, str(existing.reservation_id))

                    if existing.status == ReservationStatus.FULFILLED:
                        return existing
                    if existing.status == ReservationStatus.RELEASED:
                        if existing.expired_by_timeout:
                            raise ReservationExpired(order_id, existing.reservation_id)
                        raise ReservationNotFound(order_id)
                    if existing.is_expired(self._clock()):
                        self._expire(existing)
                        raise ReservationExpired(order_id, existing.reservation_id)

                    for item in existing.items:
                        key = (item.sku, item.warehouse_id)
                        level = self._stock[key]
                        self._stock[key] = replace(
                            level,
                            on_hand=level.on_hand - item.quantity,
                            reserved=level.reserved - item.quantity,
                        )
                    fulfilled = replace(
                        existing,
                        status=ReservationStatus.FULFILLED,
                        fulfilled_at=self._clock(),
                    )
                    self._reservations[order_id] = fulfilled
                    logger.info(
                        "Finalized reservation %s for order %s",
                        fulfilled.reservation_id,
                        order_id,
                        extra={
                            "order_id": str(order_id),
                            "reservation_id": str(fulfilled.reservation_id),
                        },
                    )
                    return fulfilled

    async def release(self, order_id: UUID, reason: str = "released") -> Reservation | None:
        """
        Return an order's held stock to available.

        Idempotent: releasing a missing, released or expired reservation is
        a no-op. Fulfilled reservations are left untouched.

        Returns:
            The order's reservation after the call, or None if there is none
        """
        with self._tracer.span(
            "fulfillment.inventory.release",
            {ATTR_ORDER_ID: str(order_id)},
        ):
            while True:
                existing = self._reservations.get(order_id)
                if existing is None:
                    return None
                if not existing.is_active:
                    if existing.status == ReservationStatus.FULFILLED:
                        logger.warning(
                            "Not releasing fulfilled reservation %s for order %s",
                            existing.reservation_id,
                            order_id,
                            extra={"order_id": str(order_id)},
                        )
                    return existing
                async with self._locked([order_id], self._held_keys(existing)):
                    if self._reservations.get(order_id) is not existing:
                        continue
                    return self._release(existing, reason)

    async def restock(self, order_id: UUID, reason: str = "restocked") -> Reservation | None:
        """
        Put a fulfilled reservation's units back on hand.

        Used when a confirmed order is cancelled before shipping. The
        reservation moves to ``released``; calling again is a no-op.

        Returns:
            The order's reservation after the call, or None if there is none
        """
        with self._tracer.span(
            "fulfillment.inventory.restock",
            {ATTR_ORDER_ID: str(order_id)},
        ):
            while True:
                existing = self._reservations.get(order_id)
                if existing is None or existing.status != ReservationStatus.FULFILLED:
                    return existing
                keys = {(item.sku, item.warehouse_id) for item in existing.items}
                async with self._locked([order_id], keys):
                    if self._reservations.get(order_id) is not existing:
                        continue
                    for item in existing.items:
                        key = (item.sku, item.warehouse_id)
                        level = self._stock[key]
                        self._stock[key] = replace(level, on_hand=level.on_hand + item.quantity)
                    restocked = replace(
                        existing,
                        status=ReservationStatus.RELEASED,
                        released_at=self._clock(),
                        release_reason=reason,
                    )
                    self._reservations[order_id] = restocked
                    logger.info(
                        "Restocked fulfilled reservation %s for order %s: %s",
                        restocked.reservation_id,
                        order_id,
                        reason,
                        extra={"order_id": str(order_id), "reason": reason},
                    )
                    return restocked

    def _release(self, reservation: Reservation, reason: str) -> Reservation:
        for item in reservation.items:
            key = (item.sku, item.warehouse_id)
            level = self._stock[key]
            self._stock[key] = replace(level, reserved=level.reserved - item.quantity)
        released = replace(
            reservation,
            status=ReservationStatus.RELEASED,
            released_at=self._clock(),
            release_reason=reason,
        )
        self._reservations[reservation.order_id] = released
        logger.info(
            "Released reservation %s for order %s: %s",
            released.reservation_id,
            released.order_id,
            reason,
            extra={
                "order_id": str(released.order_id),
                "reservation_id": str(released.reservation_id),
                "reason": reason,
            },
        )
        return released

    def _expire(self, reservation: Reservation) -> Reservation:
        released = self._release(reservation, RELEASE_REASON_EXPIRED)
        self._expired_unannounced.append(released)
        return released

    async def _expire_contended(self, skus: set[str], *, exclude: UUID | None = None) -> None:
        """Release expired holds of other orders on any of these SKUs."""
        now = self._clock()
        stale = [
            r
            for r in list(self._reservations.values())
            if r.is_active and r.order_id != exclude and r.is_expired(now) and r.skus & skus
        ]
        for reservation in stale:
            await self._expire_one(reservation)

    async def _expire_one(self, reservation: Reservation) -> Reservation | None:
        async with self._locked([reservation.order_id], self._held_keys(reservation)):
            current = self._reservations.get(reservation.order_id)
            if current is not reservation:
                return None
            return self._expire(current)

    async def sweep_expired(self) -> list[Reservation]:
        """
        Release every active reservation past its expiry.

        Returns:
            All reservations released because of expiry since the previous
            sweep, including those expired lazily by other operations
        """
        with self._tracer.span("fulfillment.inventory.sweep", {}) as span:
            now = self._clock()
            stale = [r for r in list(self._reservations.values()) if r.is_active and r.is_expired(now)]
            for reservation in stale:
                await self._expire_one(reservation)

            expired, self._expired_unannounced = self._expired_unannounced, []
            if span:
                span.set_attribute(ATTR_ITEM_COUNT, len(expired))
            if expired:
                logger.info(
                    "Swept %d expired reservations",
                    len(expired),
                    extra={"count": len(expired)},
                )
            return expired

    def requeue_expired(self, reservations: Iterable[Reservation]) -> None:
        """Put expired reservations back for the next sweep to report."""
        self._expired_unannounced[:0] = list(reservations)

    async def reserved_quantity(self, sku: str) -> int:
        """Units of a SKU held by active reservations, summed over warehouses."""
        return sum(level.reserved for key, level in self._stock.items() if key[0] == sku)


__all__ = ["DEFAULT_RESERVATION_TTL", "ReservationManager"]
