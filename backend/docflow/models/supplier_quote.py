"""Purchase requisitions and the supplier quotes answering them."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docflow.db.base import Base, LinePricingMixin, TimestampMixin


class Requisition(Base, TimestampMixin):
    """An internal request to buy, sent out to suppliers for quotes."""

    __tablename__ = "requisitions"

    id: Mapped[int] = mapped_column(primary_key=True)
    requisition_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="Approved", nullable=False)

    items: Mapped[list["RequisitionItem"]] = relationship(
        "RequisitionItem", back_populates="requisition", cascade="all, delete-orphan"
    )


class RequisitionItem(Base):
    __tablename__ = "requisition_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    requisition_id: Mapped[int] = mapped_column(
        ForeignKey("requisitions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    requisition: Mapped["Requisition"] = relationship("Requisition", back_populates="items")


class SupplierQuote(Base, TimestampMixin):
    """A supplier's priced response, possibly to a requisition."""

    __tablename__ = "supplier_quotes"

    id: Mapped[int] = mapped_column(primary_key=True)
    quote_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    supplier_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    requisition_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("requisitions.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(30), default="Accepted", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="BHD", nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    supplier: Mapped[Optional["Supplier"]] = relationship("Supplier")
    requisition: Mapped[Optional["Requisition"]] = relationship("Requisition")
    items: Mapped[list["SupplierQuoteItem"]] = relationship(
        "SupplierQuoteItem",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="SupplierQuoteItem.id",
    )


class SupplierQuoteItem(Base, LinePricingMixin):
    __tablename__ = "supplier_quote_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    quote_id: Mapped[int] = mapped_column(
        ForeignKey("supplier_quotes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("items.id", ondelete="SET NULL"), nullable=True
    )
    line_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    item_description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_of_measure: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    specification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    quote: Mapped["SupplierQuote"] = relationship("SupplierQuote", back_populates="items")


# Forward references
from docflow.models.party import Supplier
