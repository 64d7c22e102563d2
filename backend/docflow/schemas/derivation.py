"""Derivation request/response schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from docflow.core.errors import DataQualityWarning
from docflow.models.invoice import InvoiceType
from docflow.services.derivation_service import GroupBy, SourceKind, SourceRef
from docflow.services.derived_document import DerivedDocument, TargetType
from docflow.services.fulfillment_ledger import LedgerBalance, LpoLineQuantity, QuantitySource


class SourceRefSchema(BaseModel):
    kind: SourceKind
    id: int

    def to_ref(self) -> SourceRef:
        return SourceRef(kind=self.kind, id=self.id)


class DerivationRequest(BaseModel):
    """Derive an invoice or purchase order(s) from upstream documents."""
    source_refs: List[SourceRefSchema] = Field(min_length=1)
    target_type: TargetType
    group_by: Optional[GroupBy] = None
    selected_line_ids: Optional[List[int]] = None
    invoice_type: InvoiceType = InvoiceType.FINAL
    supplier_id: Optional[int] = None
    created_by: Optional[int] = None

    @model_validator(mode="after")
    def check_invoice_options(self):
        if self.target_type == TargetType.PURCHASE_ORDER and self.invoice_type != InvoiceType.FINAL:
            raise ValueError("invoice_type only applies to invoices")
        return self


class DerivedLineResponse(BaseModel):
    line_number: int
    item_id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    pricing_sources: Dict[str, str]


class DerivedDocumentResponse(BaseModel):
    id: int
    number: str
    target_type: TargetType
    invoice_type: Optional[InvoiceType] = None
    customer_id: Optional[int] = None
    supplier_id: Optional[int] = None
    currency: str
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    grand_total: Decimal
    source_references: List[dict] = []
    lines: List[DerivedLineResponse] = []

    @classmethod
    def from_document(cls, document: DerivedDocument) -> "DerivedDocumentResponse":
        totals = document.totals
        return cls(
            id=document.record_id,
            number=document.number,
            target_type=document.target_type,
            invoice_type=document.invoice_type,
            customer_id=document.customer_id,
            supplier_id=document.supplier_id,
            currency=document.currency,
            subtotal=totals.subtotal,
            discount_total=totals.discount_total,
            tax_total=totals.tax_total,
            grand_total=totals.grand_total,
            source_references=document.source_references,
            lines=[
                DerivedLineResponse(
                    line_number=line.line_number,
                    item_id=line.item_id,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    gross_amount=line.computed.gross,
                    discount_amount=line.computed.discount,
                    net_amount=line.computed.net,
                    vat_amount=line.computed.vat,
                    total_amount=line.computed.total,
                    pricing_sources=line.pricing.sources(),
                )
                for line in document.lines
            ],
        )


class WarningResponse(BaseModel):
    kind: str
    message: str
    line_ref: Optional[str] = None

    @classmethod
    def from_warning(cls, warning: DataQualityWarning) -> "WarningResponse":
        return cls(kind=warning.kind.value, message=warning.message, line_ref=warning.line_ref)


class DerivationResponse(BaseModel):
    documents: List[DerivedDocumentResponse]
    warnings: List[WarningResponse] = []


class LedgerBalanceResponse(BaseModel):
    source_line: str
    ordered: Decimal
    delivered: Decimal
    invoiced: Decimal
    purchased: Decimal
    remaining: Decimal
    remaining_to_deliver: Decimal
    remaining_to_invoice: Decimal
    remaining_to_purchase: Decimal
    over_fulfilled: bool

    @classmethod
    def from_balance(cls, balance: LedgerBalance) -> "LedgerBalanceResponse":
        return cls(
            source_line=str(balance.ref),
            ordered=balance.ordered,
            delivered=balance.delivered,
            invoiced=balance.invoiced,
            purchased=balance.purchased,
            remaining=balance.remaining,
            remaining_to_deliver=balance.remaining_to_deliver,
            remaining_to_invoice=balance.remaining_to_invoice,
            remaining_to_purchase=balance.remaining_to_purchase,
            over_fulfilled=balance.over_fulfilled,
        )


class LpoLineQuantityResponse(BaseModel):
    lpo_item_id: int
    sales_order_item_id: Optional[int] = None
    lpo_quantity: Decimal
    actual_quantity: Decimal
    source: QuantitySource
    references: List[str] = Field(default_factory=list)

    @classmethod
    def from_quantity(cls, line: LpoLineQuantity) -> "LpoLineQuantityResponse":
        return cls(
            lpo_item_id=line.lpo_item_id,
            sales_order_item_id=line.sales_order_item_id,
            lpo_quantity=line.lpo_quantity,
            actual_quantity=line.actual_quantity,
            source=line.source,
            references=list(line.references),
        )
