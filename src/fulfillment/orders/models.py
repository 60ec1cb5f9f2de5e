"""Order aggregate state."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.types import Address, LineItem


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    INVENTORY_RESERVED = "inventory_reserved"
    PAYMENT_PROCESSING = "payment_processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"


class OrderTransition(BaseModel):
    """One entry of an order's transition history."""

    model_config = ConfigDict(frozen=True)

    from_status: OrderStatus
    to_status: OrderStatus
    trigger: str
    at: datetime
    reason: str | None = None
    cause_id: UUID | None = None


class Order(BaseModel):
    """
    Immutable snapshot of an order.

    Every transition produces a new snapshot with ``version`` incremented
    by one; the repository stores it only if the stored version still
    equals the version the transition was computed from.

    Attributes:
        order_id: Order identity, never changes
        user_id: Customer placing the order
        status: Current lifecycle state
        items: Ordered lines with unit price snapshots
        total: Sum of line subtotals
        currency: ISO 4217 currency code
        version: Optimistic concurrency version, starts at 1
        correlation_id: Saga correlation ID shared by every event of the order
        reservation_id: Inventory reservation backing the order
        payment_attempt: Attempt number used to derive the payment key
        payment_id: Payment record that paid for the order
        transitions: Transition history, oldest first
        requires_return: Set when cancellation was redirected to returns
    """

    model_config = ConfigDict(frozen=True)

    order_id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    status: OrderStatus = OrderStatus.PENDING
    items: tuple[LineItem, ...] = Field(..., min_length=1)
    total: Decimal
    currency: str = Field(default="USD", min_length=3, max_length=3)
    shipping_address: Address
    billing_address: Address
    version: int = Field(default=1, ge=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    reservation_id: UUID | None = None
    payment_attempt: int = Field(default=1, ge=1)
    payment_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    transitions: tuple[OrderTransition, ...] = ()
    cancel_reason: str | None = None
    failure_reason: str | None = None
    requires_return: bool = False

    @staticmethod
    def compute_total(items: tuple[LineItem, ...] | list[LineItem]) -> Decimal:
        return sum((item.subtotal for item in items), Decimal("0"))

    def transitioned(
        self,
        to_status: OrderStatus,
        trigger: str,
        at: datetime,
        reason: str | None = None,
        cause_id: UUID | None = None,
        **changes: object,
    ) -> "Order":
        """Snapshot after moving to ``to_status`` (version + 1)."""
        entry = OrderTransition(
            from_status=self.status,
            to_status=to_status,
            trigger=trigger,
            at=at,
            reason=reason,
            cause_id=cause_id,
        )
        return self.model_copy(
            update={
                **changes,
                "status": to_status,
                "version": self.version + 1,
                "updated_at": at,
                "transitions": (*self.transitions, entry),
            }
        )

    def updated(self, at: datetime, **changes: object) -> "Order":
        """Snapshot with field changes but no status change (version + 1)."""
        return self.model_copy(
            update={**changes, "version": self.version + 1, "updated_at": at}
        )

    def caused_by(self, event_id: UUID) -> list[OrderTransition]:
        """Transitions applied on behalf of an event."""
        return [entry for entry in self.transitions if entry.cause_id == event_id]

    def entered_at(self, status: OrderStatus) -> datetime | None:
        """When the order last entered ``status``."""
        for entry in reversed(self.transitions):
            if entry.to_status == status:
                return entry.at
        return self.created_at if status == OrderStatus.PENDING else None


__all__ = ["Order", "OrderStatus", "OrderTransition"]
