"""Item master data."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docflow.db.base import Base, TimestampMixin

# Descriptions that carry no information and lose to any other source
GENERIC_ITEM_DESCRIPTIONS = frozenset({
    "generic item",
    "item from sales order",
    "auto-generated item for invoice",
})


class Item(Base, TimestampMixin):
    """A stocked or purchasable item."""

    __tablename__ = "items"

    id: Mapped[int] = mapped_column(primary_key=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    barcode: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True, index=True)
    supplier_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    supplier_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unit_of_measure: Mapped[str] = mapped_column(String(20), default="EA", nullable=False)
    cost_price: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    supplier: Mapped[Optional["Supplier"]] = relationship("Supplier", back_populates="items")

    @property
    def has_generic_description(self) -> bool:
        return (self.description or "").strip().lower() in GENERIC_ITEM_DESCRIPTIONS


# Forward references
from docflow.models.party import Supplier
