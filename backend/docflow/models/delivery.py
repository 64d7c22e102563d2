"""Delivery note models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docflow.db.base import Base, LinePricingMixin, TimestampMixin


class Delivery(Base, TimestampMixin):
    """A physical shipment of goods against a sales order."""

    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(primary_key=True)
    delivery_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    sales_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales_orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(30), default="Complete", nullable=False)
    delivery_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    sales_order: Mapped[Optional["SalesOrder"]] = relationship("SalesOrder")
    items: Mapped[list["DeliveryItem"]] = relationship(
        "DeliveryItem",
        back_populates="delivery",
        cascade="all, delete-orphan",
        order_by="DeliveryItem.id",
    )


class DeliveryItem(Base, LinePricingMixin):
    """Quantity moved for one order line within a delivery."""

    __tablename__ = "delivery_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    delivery_id: Mapped[int] = mapped_column(
        ForeignKey("deliveries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sales_order_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales_order_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Purchase order line the goods were procured under, if any
    supplier_lpo_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("supplier_lpo_items.id", ondelete="SET NULL"), nullable=True
    )
    item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    barcode: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    supplier_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ordered_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    picked_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    delivered_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    picking_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    delivery: Mapped["Delivery"] = relationship("Delivery", back_populates="items")
    sales_order_item: Mapped[Optional["SalesOrderItem"]] = relationship("SalesOrderItem")
    supplier_lpo_item: Mapped[Optional["SupplierLpoItem"]] = relationship("SupplierLpoItem")

    @property
    def moved_quantity(self) -> Decimal:
        """Delivered quantity, falling back to picked."""
        for qty in (self.delivered_quantity, self.picked_quantity):
            if qty and qty > 0:
                return Decimal(qty)
        return Decimal("0")


# Forward references
from docflow.models.sales_order import SalesOrder, SalesOrderItem
from docflow.models.supplier_lpo import SupplierLpoItem
