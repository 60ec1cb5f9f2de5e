"""
Inventory coordinator.

Reactions:
    order.created    -> inventory.reserved (hold confirmed)
                        | inventory.reservation.failed (no usable hold)
    order.confirmed  -> finalize the hold; inventory.released if it expired
    order.cancelled  -> release (or restock a finalized hold), inventory.released
    payment.failed   -> release, inventory.released
"""

import logging
from typing import Any

from fulfillment.bus import EventBus
from fulfillment.clock import Clock, utcnow
from fulfillment.events import (
    EventEnvelope,
    EventPayload,
    InventoryReleased,
    InventoryReservationFailed,
    InventoryReserved,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    PaymentFailed,
)
from fulfillment.exceptions import ReservationExpired
from fulfillment.idempotency import ProcessedEventStore
from fulfillment.inventory import RELEASE_REASON_EXPIRED, ReservationManager, ReservationStatus
from fulfillment.inventory.models import Reservation
from fulfillment.saga.coordinator import Reaction, SagaCoordinator

logger = logging.getLogger(__name__)

INVENTORY_SERVICE = "inventory-service"


class InventoryCoordinator(SagaCoordinator):
    """Inventory-service participant of the fulfillment saga."""

    consumer_group = INVENTORY_SERVICE

    def __init__(
        self,
        bus: EventBus,
        processed: ProcessedEventStore,
        manager: ReservationManager,
        *,
        clock: Clock | None = None,
        **kwargs: Any,
    ) -> None:
        self._manager = manager
        self._clock = clock or utcnow
        super().__init__(bus, processed, **kwargs)

    def reactions(self) -> dict[str, Reaction]:
        return {
            OrderCreated.event_type: self._on_order_created,
            OrderConfirmed.event_type: self._on_order_confirmed,
            OrderCancelled.event_type: self._on_order_cancelled,
            PaymentFailed.event_type: self._on_payment_failed,
        }

    @staticmethod
    def _released(reservation: Reservation) -> InventoryReleased:
        return InventoryReleased(
            order_id=reservation.order_id,
            reservation_id=reservation.reservation_id,
            reason=reservation.release_reason or "released",
        )

    async def _on_order_created(
        self, envelope: EventEnvelope, payload: OrderCreated
    ) -> EventPayload:
        reservation = await self._manager.get_reservation(payload.order_id)
        if reservation is None or reservation.reservation_id != payload.reservation_id:
            return InventoryReservationFailed(
                order_id=payload.order_id, reason="reservation_not_found"
            )

        usable = reservation.status == ReservationStatus.FULFILLED or (
            reservation.is_active and not reservation.is_expired(self._clock())
        )
        if not usable:
            return InventoryReservationFailed(
                order_id=payload.order_id,
                reason=reservation.release_reason or RELEASE_REASON_EXPIRED,
            )

        return InventoryReserved(
            order_id=payload.order_id,
            reservation_id=reservation.reservation_id,
            items=reservation.items,
            expires_at=reservation.expires_at,
        )

    async def _on_order_confirmed(
        self, envelope: EventEnvelope, payload: OrderConfirmed
    ) -> EventPayload | None:
        try:
            await self._manager.finalize(payload.order_id)
        except ReservationExpired as e:
            logger.warning(
                "Reservation for confirmed order %s expired before finalization",
                payload.order_id,
                extra={"order_id": str(payload.order_id), "reservation_id": str(e.reservation_id)},
            )
            return InventoryReleased(
                order_id=payload.order_id,
                reservation_id=e.reservation_id,
                reason=RELEASE_REASON_EXPIRED,
            )
        return None

    async def _on_order_cancelled(
        self, envelope: EventEnvelope, payload: OrderCancelled
    ) -> EventPayload | None:
        reservation = await self._manager.get_reservation(payload.order_id)
        if reservation is None:
            return None
        if reservation.status == ReservationStatus.FULFILLED:
            restocked = await self._manager.restock(payload.order_id, reason="order_cancelled")
            return self._released(restocked) if restocked is not None else None

        released = await self._manager.release(payload.order_id, reason="order_cancelled")
        return self._released(released) if released is not None else None

    async def _on_payment_failed(
        self, envelope: EventEnvelope, payload: PaymentFailed
    ) -> EventPayload | None:
        released = await self._manager.release(payload.order_id, reason="payment_failed")
        if released is None or released.status != ReservationStatus.RELEASED:
            return None
        return self._released(released)


__all__ = ["INVENTORY_SERVICE", "InventoryCoordinator"]
