"""
Inventory reservations.

Example:
    >>> from fulfillment.inventory import ReservationManager
    >>>
    >>> manager = ReservationManager()
    >>> await manager.set_stock("SKU-A", "wh-1", 5)
    >>> reservation = await manager.reserve(order_id, {"SKU-A": 2})
"""

from fulfillment.inventory.manager import DEFAULT_RESERVATION_TTL, ReservationManager
from fulfillment.inventory.models import (
    RELEASE_REASON_EXPIRED,
    Reservation,
    ReservationStatus,
    StockLevel,
)
from fulfillment.inventory.sweeper import SWEEPER_SOURCE, ReservationSweeper, expiry_event_id

__all__ = [
    "DEFAULT_RESERVATION_TTL",
    "RELEASE_REASON_EXPIRED",
    "Reservation",
    "ReservationManager",
    "ReservationStatus",
    "ReservationSweeper",
    "StockLevel",
    "SWEEPER_SOURCE",
    "expiry_event_id",
]
