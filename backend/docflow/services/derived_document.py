"""In-memory shape of a derived document before and after persistence."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from docflow.models.invoice import InvoiceType
from docflow.models.supplier_lpo import LpoSourceType
from docflow.services.fulfillment_ledger import SourceLineRef
from docflow.services.line_computation import ComputedLine, DocumentTotals
from docflow.services.number_generator import DocumentPrefix
from docflow.services.pricing_resolver import ResolvedPricing


class TargetType(str, Enum):
    INVOICE = "invoice"
    PURCHASE_ORDER = "purchase_order"


@dataclass
class DerivedDocumentLine:
    line_number: int
    item_id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    computed: ComputedLine
    pricing: ResolvedPricing
    barcode: Optional[str] = None
    supplier_code: Optional[str] = None
    source_ref: Optional[SourceLineRef] = None
    sales_order_item_id: Optional[int] = None
    delivery_item_id: Optional[int] = None
    quotation_item_id: Optional[int] = None
    supplier_quote_item_id: Optional[int] = None


@dataclass
class DerivedDocument:
    """Header and lines of one invoice or purchase order to be written.

    ``number`` and ``record_id`` are filled in once persisted.
    """

    target_type: TargetType
    prefix: DocumentPrefix
    lines: List[DerivedDocumentLine]
    totals: DocumentTotals
    currency: str
    exchange_rate: Decimal
    status: str = "Draft"
    invoice_type: Optional[InvoiceType] = None
    customer_id: Optional[int] = None
    supplier_id: Optional[int] = None
    sales_order_id: Optional[int] = None
    delivery_id: Optional[int] = None
    quotation_id: Optional[int] = None
    lpo_source_type: Optional[LpoSourceType] = None
    grouping_criteria: Optional[str] = None
    source_references: List[Dict[str, Any]] = field(default_factory=list)
    number: Optional[str] = None
    record_id: Optional[int] = None

    def source_ids(self, source_type: str) -> List[int]:
        return [ref["id"] for ref in self.source_references if ref["type"] == source_type]
