"""Stock and reservation records owned by the reservation manager."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from fulfillment.types import ReservationItem


class ReservationStatus(str, Enum):
    """Lifecycle of a reservation: active -> released | fulfilled."""

    ACTIVE = "active"
    RELEASED = "released"
    FULFILLED = "fulfilled"


# Release reasons recorded on reservations and carried by inventory.released
RELEASE_REASON_EXPIRED = "expired"


@dataclass(frozen=True)
class StockLevel:
    """
    Counters for one SKU at one warehouse.

    Attributes:
        sku: Stock-keeping unit
        warehouse_id: Warehouse holding the stock
        on_hand: Physical units not yet shipped
        reserved: Units held by active reservations
    """

    sku: str
    warehouse_id: str
    on_hand: int = 0
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


@dataclass(frozen=True)
class Reservation:
    """
    Time-bounded hold on stock for one order.

    A reservation past ``expires_at`` is no longer honorable even while its
    status still reads ``active``; it is swept to ``released`` before any
    other mutation touches the stock it holds.

    Attributes:
        reservation_id: Unique reservation identifier
        order_id: Order the stock is held for
        items: (sku, warehouse, quantity) allocations
        status: active, released or fulfilled
        expires_at: Absolute expiry (UTC)
        created_at: When the hold was taken
        correlation_id: Saga correlation ID, carried onto expiry events
        released_at: When the hold was released
        fulfilled_at: When the hold became a permanent decrement
        release_reason: Why the hold was released
    """

    reservation_id: UUID
    order_id: UUID
    items: tuple[ReservationItem, ...]
    status: ReservationStatus
    expires_at: datetime
    created_at: datetime
    correlation_id: UUID | None = None
    released_at: datetime | None = None
    fulfilled_at: datetime | None = None
    release_reason: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE

    @property
    def expired_by_timeout(self) -> bool:
        return self.status == ReservationStatus.RELEASED and (
            self.release_reason == RELEASE_REASON_EXPIRED
        )

    @property
    def skus(self) -> set[str]:
        return {item.sku for item in self.items}

    def quantity_of(self, sku: str) -> int:
        return sum(item.quantity for item in self.items if item.sku == sku)


__all__ = [
    "RELEASE_REASON_EXPIRED",
    "Reservation",
    "ReservationStatus",
    "StockLevel",
]
