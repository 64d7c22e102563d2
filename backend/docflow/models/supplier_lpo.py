"""Supplier purchase order (LPO) models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docflow.db.base import Base, LinePricingMixin, TimestampMixin


class LpoStatus(str, Enum):
    DRAFT = "Draft"
    SENT = "Sent"
    RECEIVED = "Received"
    CANCELLED = "Cancelled"


class LpoSourceType(str, Enum):
    SUPPLIER_QUOTE = "Supplier Quote"
    SALES_ORDER = "Sales Order"


class SupplierLpo(Base, TimestampMixin):
    """A purchase order issued to one supplier."""

    __tablename__ = "supplier_lpos"

    id: Mapped[int] = mapped_column(primary_key=True)
    lpo_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[LpoStatus] = mapped_column(
        SQLEnum(LpoStatus), default=LpoStatus.DRAFT, nullable=False
    )
    source_type: Mapped[LpoSourceType] = mapped_column(SQLEnum(LpoSourceType), nullable=False)
    grouping_criteria: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_sales_order_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    source_quote_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    currency: Mapped[str] = mapped_column(String(3), default="BHD", nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    lpo_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    items: Mapped[list["SupplierLpoItem"]] = relationship(
        "SupplierLpoItem",
        back_populates="lpo",
        cascade="all, delete-orphan",
        order_by="SupplierLpoItem.line_number",
    )


class SupplierLpoItem(Base, LinePricingMixin):
    """A purchase order line. ``discount_amount``/``vat_amount`` hold the
    computed amounts once derived."""

    __tablename__ = "supplier_lpo_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    lpo_id: Mapped[int] = mapped_column(
        ForeignKey("supplier_lpos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sales_order_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales_order_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    supplier_quote_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("supplier_quote_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    supplier_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    barcode: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    pending_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    pricing_sources: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    lpo: Mapped["SupplierLpo"] = relationship("SupplierLpo", back_populates="items")
