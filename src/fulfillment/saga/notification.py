"""
Notification coordinator.

Terminal leaf of the saga: tells the customer how their order ended and
publishes nothing. Each notification carries the ID of the event that
caused it, so notifiers can drop repeats.
"""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from fulfillment.bus import EventBus
from fulfillment.events import EventEnvelope, OrderCancelled, OrderConfirmed, OrderFailed
from fulfillment.idempotency import ProcessedEventStore
from fulfillment.saga.coordinator import Reaction, SagaCoordinator

NOTIFICATION_SERVICE = "notification-service"


@dataclass(frozen=True)
class Notification:
    """
    Message to a customer.

    Attributes:
        notification_id: ID of the event the message reports
        kind: receipt, cancellation or failure
        order_id: Order concerned
        user_id: Recipient
        subject: Short summary
        detail: Reason or amount
    """

    notification_id: UUID
    kind: str
    order_id: UUID
    user_id: str
    subject: str
    detail: str = ""


@runtime_checkable
class Notifier(Protocol):
    """Delivery channel for customer notifications."""

    async def send(self, notification: Notification) -> None: ...


class InMemoryNotifier:
    """Notifier that keeps sent notifications, ignoring repeated IDs."""

    def __init__(self) -> None:
        self._sent: dict[UUID, Notification] = {}
        self.send_calls = 0

    async def send(self, notification: Notification) -> None:
        self.send_calls += 1
        self._sent.setdefault(notification.notification_id, notification)

    @property
    def sent(self) -> list[Notification]:
        return list(self._sent.values())

    def for_order(self, order_id: UUID) -> list[Notification]:
        return [n for n in self._sent.values() if n.order_id == order_id]


class NotificationCoordinator(SagaCoordinator):
    """Notification-service participant of the fulfillment saga."""

    consumer_group = NOTIFICATION_SERVICE

    def __init__(
        self,
        bus: EventBus,
        processed: ProcessedEventStore,
        notifier: Notifier,
        **kwargs: Any,
    ) -> None:
        self._notifier = notifier
        super().__init__(bus, processed, **kwargs)

    def reactions(self) -> dict[str, Reaction]:
        return {
            OrderConfirmed.event_type: self._on_outcome,
            OrderCancelled.event_type: self._on_outcome,
            OrderFailed.event_type: self._on_outcome,
        }

    async def _on_outcome(self, envelope: EventEnvelope, payload: Any) -> None:
        if isinstance(payload, OrderConfirmed):
            kind, subject = "receipt", f"Order {payload.order_id} confirmed"
            detail = f"{payload.total} {payload.currency}"
        elif isinstance(payload, OrderFailed):
            kind, subject = "failure", f"Payment for order {payload.order_id} failed"
            detail = payload.reason
        else:
            kind, subject = "cancellation", f"Order {payload.order_id} cancelled"
            detail = payload.reason

        await self._notifier.send(
            Notification(
                notification_id=envelope.event_id,
                kind=kind,
                order_id=payload.order_id,
                user_id=payload.user_id,
                subject=subject,
                detail=detail,
            )
        )


__all__ = [
    "InMemoryNotifier",
    "NOTIFICATION_SERVICE",
    "Notification",
    "NotificationCoordinator",
    "Notifier",
]
