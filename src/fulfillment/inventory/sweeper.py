"""
Background sweep of expired reservations.

The sweeper is the only place where the passage of time changes saga
state: every ``interval`` seconds it releases reservations past their
expiry and publishes ``inventory.released`` for each, so the order
coordinator can cancel the order even if no other event arrives.

Example:
    >>> sweeper = ReservationSweeper(manager, bus, interval=60.0)
    >>> await sweeper.start()
    >>> ...
    >>> await sweeper.stop()
"""

import asyncio
import contextlib
import logging
from uuid import UUID, uuid5

from fulfillment.bus import EventBus
from fulfillment.events import FOLLOW_UP_NAMESPACE, EventEnvelope, InventoryReleased
from fulfillment.inventory.manager import ReservationManager
from fulfillment.inventory.models import RELEASE_REASON_EXPIRED, Reservation
from fulfillment.observability import Tracer, create_tracer
from fulfillment.observability.attributes import ATTR_ITEM_COUNT

logger = logging.getLogger(__name__)

SWEEPER_SOURCE = "inventory-sweeper"


def expiry_event_id(reservation: Reservation) -> UUID:
    """Deterministic event ID for a reservation's expiry announcement."""
    return uuid5(
        FOLLOW_UP_NAMESPACE,
        f"{SWEEPER_SOURCE}:{reservation.reservation_id}:{InventoryReleased.event_type}",
    )


class ReservationSweeper:
    """
    Periodically releases expired reservations and announces them.

    Announcements use deterministic event IDs, so an announcement
    republished after a failed sweep is deduplicated by consumers.

    Args:
        manager: Reservation manager owning the holds
        bus: Bus receiving ``inventory.released`` events
        interval: Seconds between sweeps
        tracer: Optional custom Tracer
        enable_tracing: Whether to enable tracing
    """

    def __init__(
        self,
        manager: ReservationManager,
        bus: EventBus,
        *,
        interval: float = 60.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._manager = manager
        self._bus = bus
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._sweeps = 0
        self._announced = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> dict[str, int]:
        return {"sweeps": self._sweeps, "announced": self._announced}

    async def run_once(self) -> list[Reservation]:
        """
        Sweep once and publish ``inventory.released`` for each expired hold.

        If publishing fails, the unannounced reservations are handed back to
        the manager for the next sweep and the error propagates.

        Returns:
            Reservations announced by this sweep
        """
        with self._tracer.span("fulfillment.inventory.sweeper.run", {}) as span:
            expired = await self._manager.sweep_expired()
            self._sweeps += 1
            if span:
                span.set_attribute(ATTR_ITEM_COUNT, len(expired))

            for index, reservation in enumerate(expired):
                envelope = EventEnvelope.wrap(
                    InventoryReleased(
                        order_id=reservation.order_id,
                        reservation_id=reservation.reservation_id,
                        reason=reservation.release_reason or RELEASE_REASON_EXPIRED,
                    ),
                    partition_key=str(reservation.order_id),
                    correlation_id=reservation.correlation_id,
                    event_id=expiry_event_id(reservation),
                )
                try:
                    await self._bus.publish(envelope)
                except Exception:
                    self._manager.requeue_expired(expired[index:])
                    raise
                self._announced += 1
                logger.info(
                    "Announced expired reservation %s for order %s",
                    reservation.reservation_id,
                    reservation.order_id,
                    extra={
                        "order_id": str(reservation.order_id),
                        "reservation_id": str(reservation.reservation_id),
                        "event_id": str(envelope.event_id),
                    },
                )
            return expired

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(
                    "Reservation sweep failed: %s",
                    e,
                    exc_info=True,
                )
            await asyncio.sleep(self._interval)

    async def start(self) -> None:
        """Start sweeping in a background task. Calling start twice is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="reservation-sweeper")
        logger.info(
            "Reservation sweeper started: interval=%ss",
            self._interval,
            extra={"interval": self._interval},
        )

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Reservation sweeper stopped")


__all__ = ["ReservationSweeper", "SWEEPER_SOURCE", "expiry_event_id"]
