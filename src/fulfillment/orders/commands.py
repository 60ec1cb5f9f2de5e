"""Inbound commands accepted by the order service."""

from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from fulfillment.types import Address, LineItem


class CreateOrder(BaseModel):
    """Checkout command: reserve stock and start the saga."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)
    items: tuple[LineItem, ...] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address
    currency: str = Field(default="USD", min_length=3, max_length=3)


class CancelOrder(BaseModel):
    """Customer or operator cancellation."""

    model_config = ConfigDict(frozen=True)

    order_id: UUID
    reason: str = Field(..., min_length=1)


__all__ = ["CancelOrder", "CreateOrder"]
