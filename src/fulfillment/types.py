"""Common type definitions and value objects for the fulfillment package."""

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# Type aliases for clarity and documentation
OrderId = UUID
EventId = UUID
CorrelationId = UUID
CausationId = UUID | None
ConsumerGroup = str
Sku = str
WarehouseId = str

# Version type for optimistic locking
Version = int


class LineItem(BaseModel):
    """
    One ordered line with its unit price snapshot.

    The snapshot is taken when the order is created and never changes
    afterwards, regardless of later catalogue price updates.
    """

    model_config = ConfigDict(frozen=True)

    product_id: str = Field(..., min_length=1)
    variant_id: str | None = None
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)

    @property
    def sku(self) -> Sku:
        """Stock-keeping unit for this line (product plus variant)."""
        if self.variant_id:
            return f"{self.product_id}:{self.variant_id}"
        return self.product_id

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class ReservationItem(BaseModel):
    """Quantity of one SKU held at one warehouse."""

    model_config = ConfigDict(frozen=True)

    sku: Sku = Field(..., min_length=1)
    warehouse_id: WarehouseId = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class Address(BaseModel):
    """Postal address attached to an order."""

    model_config = ConfigDict(frozen=True)

    line1: str
    line2: str | None = None
    city: str
    region: str | None = None
    postal_code: str
    country: str = Field(..., min_length=2, max_length=2)


__all__ = [
    "OrderId",
    "EventId",
    "CorrelationId",
    "CausationId",
    "ConsumerGroup",
    "Sku",
    "WarehouseId",
    "Version",
    "LineItem",
    "ReservationItem",
    "Address",
]
