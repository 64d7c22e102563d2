"""SQLAlchemy models."""

from docflow.models.party import User, Customer, Supplier
from docflow.models.item import Item, GENERIC_ITEM_DESCRIPTIONS
from docflow.models.quotation import Quotation, QuotationItem
from docflow.models.sales_order import SalesOrder, SalesOrderItem
from docflow.models.delivery import Delivery, DeliveryItem
from docflow.models.invoice import Invoice, InvoiceItem, InvoiceStatus, InvoiceType
from docflow.models.supplier_quote import (
    Requisition,
    RequisitionItem,
    SupplierQuote,
    SupplierQuoteItem,
)
from docflow.models.supplier_lpo import (
    SupplierLpo,
    SupplierLpoItem,
    LpoStatus,
    LpoSourceType,
)

__all__ = [
    "User",
    "Customer",
    "Supplier",
    "Item",
    "GENERIC_ITEM_DESCRIPTIONS",
    "Quotation",
    "QuotationItem",
    "SalesOrder",
    "SalesOrderItem",
    "Delivery",
    "DeliveryItem",
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "InvoiceType",
    "Requisition",
    "RequisitionItem",
    "SupplierQuote",
    "SupplierQuoteItem",
    "SupplierLpo",
    "SupplierLpoItem",
    "LpoStatus",
    "LpoSourceType",
]
