"""Pricing Attribute Resolver: pick discount/VAT attributes for a line.

Each ancestor document (purchase order line, quote line, order line,
document header, delivery line) may or may not carry a discount or VAT
attribute. For every attribute independently, the first ancestor in the
context's priority order holding a non-zero value supplies it; nothing
found means zero.

Priority orders live in a table keyed by pricing context, so new document
types register an order instead of adding branches.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from docflow.services.line_computation import (
    ComputedLine, ZERO, compute, round_money, to_decimal,
)

logger = logging.getLogger(__name__)


class PricingSource(str, Enum):
    """Ancestor that supplied a pricing attribute."""

    PURCHASE_ORDER_LINE = "purchase_order_line"
    QUOTE_LINE = "quote_line"
    ORDER_LINE = "order_line"
    DOCUMENT_HEADER = "document_header"
    DELIVERY_LINE = "delivery_line"
    NONE = "none"


class PricingAttribute(str, Enum):
    DISCOUNT_PERCENT = "discount_percent"
    DISCOUNT_AMOUNT = "discount_amount"
    VAT_PERCENT = "vat_percent"
    VAT_AMOUNT = "vat_amount"


class PricingContext(str, Enum):
    """Kind of derivation a line is priced for."""

    INVOICE = "invoice"
    PROFORMA = "proforma"
    PURCHASE_ORDER_FROM_QUOTE = "purchase_order_from_quote"
    PURCHASE_ORDER_FROM_ORDER = "purchase_order_from_order"


_INVOICE_ORDER = (
    PricingSource.PURCHASE_ORDER_LINE,
    PricingSource.QUOTE_LINE,
    PricingSource.ORDER_LINE,
    PricingSource.DOCUMENT_HEADER,
    PricingSource.DELIVERY_LINE,
)

PRIORITY_TABLE: Dict[PricingContext, Dict[PricingAttribute, Tuple[PricingSource, ...]]] = {
    PricingContext.INVOICE: {attr: _INVOICE_ORDER for attr in PricingAttribute},
    PricingContext.PROFORMA: {attr: _INVOICE_ORDER for attr in PricingAttribute},
    # Supplier quote lines carry the supplier's own terms
    PricingContext.PURCHASE_ORDER_FROM_QUOTE: {
        attr: (PricingSource.QUOTE_LINE, PricingSource.DOCUMENT_HEADER)
        for attr in PricingAttribute
    },
    # Back-to-back orders copy the order line's terms
    PricingContext.PURCHASE_ORDER_FROM_ORDER: {
        attr: (PricingSource.ORDER_LINE, PricingSource.DOCUMENT_HEADER)
        for attr in PricingAttribute
    },
}


def register_priority(
    context: PricingContext,
    order: Sequence[PricingSource],
    attributes: Optional[Iterable[PricingAttribute]] = None,
) -> None:
    """Set the ancestor priority order for a context (all attributes by default)."""
    table = PRIORITY_TABLE.setdefault(context, {})
    for attr in attributes or PricingAttribute:
        table[attr] = tuple(order)
    logger.info(f"Registered pricing priority for {context.value}: {[s.value for s in order]}")


@dataclass(frozen=True)
class AncestorPricing:
    """Pricing attributes carried by one ancestor of a line.

    ``basis_quantity`` is the quantity the ancestor's override amounts were
    written for; amounts are prorated when the carried quantity differs.
    """

    source: PricingSource
    discount_percent: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    vat_percent: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    basis_quantity: Optional[Decimal] = None
    reference: Optional[str] = None

    @classmethod
    def from_record(cls, source: PricingSource, record, reference: Optional[str] = None,
                    basis_quantity=None) -> Optional["AncestorPricing"]:
        """Build from any row exposing the LinePricingMixin columns."""
        if record is None:
            return None
        return cls(
            source=source,
            discount_percent=getattr(record, "discount_percentage", None),
            discount_amount=getattr(record, "discount_amount", None),
            vat_percent=getattr(record, "vat_percentage", None),
            vat_amount=getattr(record, "vat_amount", None),
            basis_quantity=basis_quantity,
            reference=reference,
        )

    @classmethod
    def header(cls, record, reference: Optional[str] = None) -> Optional["AncestorPricing"]:
        """Document headers supply default percentages only."""
        if record is None:
            return None
        return cls(
            source=PricingSource.DOCUMENT_HEADER,
            discount_percent=getattr(record, "discount_percentage", None),
            vat_percent=getattr(record, "vat_percentage", None),
            reference=reference,
        )

    def value_for(self, attribute: PricingAttribute) -> Optional[Decimal]:
        return {
            PricingAttribute.DISCOUNT_PERCENT: self.discount_percent,
            PricingAttribute.DISCOUNT_AMOUNT: self.discount_amount,
            PricingAttribute.VAT_PERCENT: self.vat_percent,
            PricingAttribute.VAT_AMOUNT: self.vat_amount,
        }[attribute]


@dataclass(frozen=True)
class ResolvedAttribute:
    value: Decimal
    source: PricingSource
    reference: Optional[str] = None


_NOT_FOUND = ResolvedAttribute(value=ZERO, source=PricingSource.NONE)


@dataclass(frozen=True)
class ResolvedPricing:
    """Effective discount/VAT attributes of a line, each with its origin."""

    discount_percent: ResolvedAttribute = _NOT_FOUND
    discount_amount: ResolvedAttribute = _NOT_FOUND
    vat_percent: ResolvedAttribute = _NOT_FOUND
    vat_amount: ResolvedAttribute = _NOT_FOUND

    def sources(self) -> Dict[str, str]:
        """Attribute -> source map, stored with derived lines for audit."""
        return {
            attr.value: getattr(self, attr.value).source.value
            for attr in PricingAttribute
        }

    def compute(self, quantity, unit_price) -> ComputedLine:
        return compute(
            quantity,
            unit_price,
            discount_percent=self.discount_percent.value,
            discount_amount_override=self.discount_amount.value,
            vat_percent=self.vat_percent.value,
            vat_amount_override=self.vat_amount.value,
        )


def _present(value) -> bool:
    return value is not None and to_decimal(value) != 0


_AMOUNT_ATTRIBUTES = (PricingAttribute.DISCOUNT_AMOUNT, PricingAttribute.VAT_AMOUNT)


def _prorate(amount: Decimal, basis, quantity) -> Decimal:
    if quantity is None or basis is None:
        return round_money(amount)
    basis, quantity = to_decimal(basis), to_decimal(quantity)
    if basis <= 0 or basis == quantity:
        return round_money(amount)
    return round_money(amount * quantity / basis)


def resolve(
    candidates: Iterable[Optional[AncestorPricing]],
    context: PricingContext = PricingContext.INVOICE,
    quantity: Optional[Decimal] = None,
    line_ref: Optional[str] = None,
) -> ResolvedPricing:
    """Resolve every pricing attribute independently from the ancestors.

    Args:
        candidates: ancestors of the line; ``None`` entries (ancestor not
            found) are ignored, order is irrelevant.
        context: selects the priority order from ``PRIORITY_TABLE``.
        quantity: carried quantity, used to prorate override amounts.
        line_ref: identifies the line in log records.
    """
    by_source: Dict[PricingSource, AncestorPricing] = {}
    for candidate in candidates:
        if candidate is not None and candidate.source not in by_source:
            by_source[candidate.source] = candidate

    priorities = PRIORITY_TABLE[context]
    resolved: Dict[str, ResolvedAttribute] = {}

    for attr in PricingAttribute:
        chosen = _NOT_FOUND
        for source in priorities.get(attr, ()):
            ancestor = by_source.get(source)
            if ancestor is None:
                continue
            raw = ancestor.value_for(attr)
            if not _present(raw):
                continue
            value = to_decimal(raw)
            if attr in _AMOUNT_ATTRIBUTES:
                value = _prorate(value, ancestor.basis_quantity, quantity)
            chosen = ResolvedAttribute(value=value, source=source, reference=ancestor.reference)
            break
        resolved[attr.value] = chosen

    pricing = ResolvedPricing(**resolved)
    logger.debug(f"Resolved pricing for {line_ref or 'line'} ({context.value}): {pricing.sources()}")
    return pricing


# ---------------------------------------------------------------------------
# Description resolution
# ---------------------------------------------------------------------------

FALLBACK_DESCRIPTION = "Item"


@dataclass
class DescriptionCandidates:
    """Descriptions available for a line, plus notes to append."""

    item_master: Optional[str] = None
    item_master_is_generic: bool = False
    quote_line: Optional[str] = None
    order_line: Optional[str] = None
    delivery_line: Optional[str] = None
    notes: List[str] = field(default_factory=list)


def resolve_description(candidates: DescriptionCandidates) -> str:
    """First informative description, with order notes and picking notes
    appended on their own lines."""
    chain = [
        None if candidates.item_master_is_generic else candidates.item_master,
        candidates.quote_line,
        candidates.order_line,
        candidates.delivery_line,
    ]
    description = next(
        (text.strip() for text in chain if text and text.strip()),
        FALLBACK_DESCRIPTION,
    )
    if description == FALLBACK_DESCRIPTION:
        logger.debug("No usable description on any source, using fallback")
    for note in candidates.notes:
        if note and note.strip():
            description = f"{description}\n{note.strip()}"
    return description
