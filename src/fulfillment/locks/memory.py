"""
In-process keyed locks.

Serializes work on a shared resource identified by a string key (a stock
counter ``sku@warehouse``, an order ID) without a global lock. Locks for
several keys are always taken in sorted key order so two callers asking for
overlapping key sets cannot deadlock.

Usage:
    >>> locks = KeyedLockManager()
    >>> async with locks.acquire_many(["SKU-A@wh-1", "SKU-B@wh-1"], timeout=10.0):
    ...     # Critical section for both counters
    ...     ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from fulfillment.exceptions import LockAcquisitionError
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import ATTR_LOCK_KEY, ATTR_LOCK_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The lock key
        acquired_at: When the lock was acquired
    """

    key: str
    acquired_at: datetime


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLockManager:
    """
    Keyed asyncio locks with acquisition timeouts.

    Lock objects are created on demand and discarded once no caller holds
    or waits for them, so the table stays proportional to active keys.

    Example:
        >>> locks = KeyedLockManager()
        >>> try:
        ...     async with locks.acquire("order:123", timeout=5.0):
        ...         await update_order()
        ... except LockAcquisitionError:
        ...     ...  # retried by the bus
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0 and self._entries.get(key) is entry:
            del self._entries[key]

    @asynccontextmanager
    async def acquire(self, key: str, *, timeout: float | None = None) -> AsyncIterator[LockInfo]:
        """
        Acquire one keyed lock as a context manager.

        Args:
            key: Lock key
            timeout: Maximum seconds to wait (None = wait forever)

        Raises:
            LockAcquisitionError: If the lock is not acquired within timeout
        """
        with self._tracer.span(
            "fulfillment.lock.acquire",
            {ATTR_LOCK_KEY: key, ATTR_LOCK_TIMEOUT: timeout if timeout is not None else -1},
        ):
            entry = self._checkout(key)
            try:
                try:
                    async with asyncio.timeout(timeout):
                        await entry.lock.acquire()
                except TimeoutError:
                    logger.warning(
                        "Timed out acquiring lock: key=%s, timeout=%s",
                        key,
                        timeout,
                        extra={"lock_key": key, "timeout": timeout},
                    )
                    raise LockAcquisitionError(
                        key=key,
                        reason=f"Timeout after {timeout}s",
                        timeout=timeout,
                    ) from None

                try:
                    yield LockInfo(key=key, acquired_at=datetime.now(UTC))
                finally:
                    entry.lock.release()
            finally:
                self._checkin(key, entry)

    @asynccontextmanager
    async def acquire_many(
        self,
        keys: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[list[LockInfo]]:
        """
        Acquire several keyed locks in sorted key order.

        Duplicate keys are acquired once. The timeout applies to the whole
        set; on failure every lock already taken is released.

        Raises:
            LockAcquisitionError: If the set is not acquired within timeout
        """
        ordered = sorted(set(keys))
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with AsyncExitStack() as stack:
            infos: list[LockInfo] = []
            for key in ordered:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                infos.append(await stack.enter_async_context(self.acquire(key, timeout=remaining)))
            yield infos

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @property
    def active_keys(self) -> list[str]:
        """Keys currently held or waited for."""
        return sorted(self._entries)


__all__ = ["KeyedLockManager", "LockInfo", "LockAcquisitionError"]
