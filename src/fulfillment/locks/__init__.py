"""
Keyed lock utilities.

Example:
    >>> from fulfillment.locks import KeyedLockManager, stock_lock_key
    >>>
    >>> locks = KeyedLockManager()
    >>> async with locks.acquire(stock_lock_key("SKU-A", "wh-1"), timeout=10.0):
    ...     ...
"""

from fulfillment.exceptions import LockAcquisitionError
from fulfillment.locks.memory import KeyedLockManager, LockInfo


def stock_lock_key(sku: str, warehouse_id: str) -> str:
    """Lock key guarding one (sku, warehouse) stock counter."""
    return f"stock:{sku}@{warehouse_id}"


def order_lock_key(order_id: object) -> str:
    """Lock key guarding one order's reservation."""
    return f"order:{order_id}"


__all__ = [
    "KeyedLockManager",
    "LockAcquisitionError",
    "LockInfo",
    "order_lock_key",
    "stock_lock_key",
]
