"""Document Derivation Orchestrator.

Derives invoices and supplier purchase orders (LPOs) from upstream
documents:

1. Collect the source lines to carry (selected lines, all lines, or virtual
   lines synthesized from the parent order when a delivery has none)
2. Clamp each line's quantity against the fulfillment ledger
3. Match the quoted line, resolve discount/VAT, compute line financials
4. Resolve (or synthesize) the item master record and the description
5. Partition by supplier when requested, fold header totals
6. Number and persist every document atomically

Line-level problems skip or degrade the line and are reported as
``DataQualityWarning``. Header-level and persistence problems raise and
roll back everything, including placeholder items created on the way.
"""

from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set
import logging

from sqlalchemy.orm import Session

from docflow.core.config import settings
from docflow.core.errors import (
    DataQualityWarning, SourceNotFoundError, ValidationError, WarningKind,
)
from docflow.models.delivery import Delivery, DeliveryItem
from docflow.models.invoice import InvoiceType
from docflow.models.item import Item
from docflow.models.quotation import Quotation, QuotationItem
from docflow.models.sales_order import SalesOrder, SalesOrderItem
from docflow.models.supplier_lpo import LpoSourceType
from docflow.models.supplier_quote import SupplierQuote
from docflow.services.derived_document import (
    DerivedDocument, DerivedDocumentLine, TargetType,
)
from docflow.services.document_writer import DocumentWriter
from docflow.services.fulfillment_ledger import (
    FulfillmentLedgerService, LedgerBalance, SourceLine, SourceLineKind, SourceLineRef,
    sales_order_item_line,
)
from docflow.services.item_master_service import ItemHint, ItemMasterService
from docflow.services.line_computation import ZERO, reconcile_header_totals, to_decimal
from docflow.services.number_generator import DocumentNumberGenerator, DocumentPrefix
from docflow.services.pricing_resolver import (
    AncestorPricing, DescriptionCandidates, PricingContext, PricingSource,
    resolve, resolve_description,
)
from docflow.services.quote_matching import (
    MatchMethod, MatchTarget, QuoteLineMatcher, requisition_quantity_for,
)

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    SALES_ORDER = "sales_order"
    QUOTATION = "quotation"
    DELIVERY = "delivery"
    SUPPLIER_QUOTE = "supplier_quote"


class GroupBy(str, Enum):
    SUPPLIER = "supplier"


INVOICE_SOURCES = {SourceKind.SALES_ORDER, SourceKind.QUOTATION, SourceKind.DELIVERY}
PURCHASE_ORDER_SOURCES = {SourceKind.SUPPLIER_QUOTE, SourceKind.SALES_ORDER}
PROFORMA_SOURCES = {SourceKind.SALES_ORDER, SourceKind.QUOTATION}


@dataclass(frozen=True)
class SourceRef:
    kind: SourceKind
    id: int


def _line_id(line) -> Optional[int]:
    return line.id if line is not None else None


@dataclass
class DerivationResult:
    documents: List[DerivedDocument]
    warnings: List[DataQualityWarning] = field(default_factory=list)

    @property
    def numbers(self) -> List[str]:
        return [doc.number for doc in self.documents]


@dataclass
class PendingLine:
    """A source line accepted for derivation, not yet priced."""

    line_ref: str
    quantity: Decimal
    unit_price: Decimal
    ancestors: List[Optional[AncestorPricing]]
    context: PricingContext
    item: Item
    descriptions: DescriptionCandidates
    barcode: Optional[str] = None
    supplier_code: Optional[str] = None
    supplier_id: Optional[int] = None
    source_ref: Optional[SourceLineRef] = None
    sales_order_item_id: Optional[int] = None
    delivery_item_id: Optional[int] = None
    quotation_item_id: Optional[int] = None
    supplier_quote_item_id: Optional[int] = None
    currency: Optional[str] = None


class DocumentDerivationService:
    """Entry point for every invoice and purchase order derivation."""

    def __init__(self, db: Session, number_generator: Optional[DocumentNumberGenerator] = None):
        self.db = db
        self.ledger = FulfillmentLedgerService(db)
        self.items = ItemMasterService(db)
        self.writer = DocumentWriter(db, number_generator)
        self.quote_matcher = QuoteLineMatcher()
        self._warnings: List[DataQualityWarning] = []
        self._claimed: Dict[SourceLineRef, Decimal] = defaultdict(lambda: ZERO)

    # ===== ENTRY POINT =====

    def derive(
        self,
        source_refs: Sequence[SourceRef],
        target_type: TargetType,
        group_by: Optional[GroupBy] = None,
        selected_line_ids: Optional[Iterable[int]] = None,
        invoice_type: InvoiceType = InvoiceType.FINAL,
        supplier_id: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> DerivationResult:
        """Derive and persist one or more documents from ``source_refs``.

        Args:
            source_refs: upstream documents, all of the same kind.
            target_type: invoice or purchase order.
            group_by: ``GroupBy.SUPPLIER`` yields one purchase order per
                supplier; otherwise a single document is produced.
            selected_line_ids: restrict to these lines of the source
                documents (delivery, order, quotation or supplier quote
                line ids depending on the source kind).
            invoice_type: Final or Proforma (invoices only).
            supplier_id: supplier for purchase orders derived from sales
                orders whose items have none.
            created_by: audit user; dropped if it does not exist.

        Raises:
            ValidationError: nothing derivable, mixed customers/suppliers,
                unsupported source, missing mandatory reference.
            PersistenceError: writing failed; nothing is left behind.
        """
        self._warnings = []
        self._claimed = defaultdict(lambda: ZERO)
        refs = list(OrderedDict.fromkeys(source_refs))
        selected: Optional[Set[int]] = set(selected_line_ids) if selected_line_ids is not None else None

        self._validate_request(refs, target_type, group_by, invoice_type)
        logger.info(
            f"Deriving {target_type.value} from {[f'{r.kind.value}:{r.id}' for r in refs]} "
            f"(group_by={group_by.value if group_by else None})"
        )

        try:
            if target_type == TargetType.INVOICE:
                documents = [self._build_invoice(refs, invoice_type, selected)]
            else:
                documents = self._build_purchase_orders(refs, group_by, selected, supplier_id)

            for document in documents:
                self.writer.persist(document, created_by=created_by)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Derivation of {target_type.value} failed, rolled back: {e}")
            raise
        finally:
            self.writer.release_numbers()

        logger.info(
            f"Derived {[doc.number for doc in documents]} with {len(self._warnings)} warnings"
        )
        return DerivationResult(documents=documents, warnings=list(self._warnings))

    def _validate_request(
        self,
        refs: List[SourceRef],
        target_type: TargetType,
        group_by: Optional[GroupBy],
        invoice_type: InvoiceType,
    ) -> None:
        if not refs:
            raise ValidationError("At least one source document is required", field="source_refs")
        kinds = {ref.kind for ref in refs}
        if len(kinds) > 1:
            raise ValidationError("Source documents must all be of the same kind", field="source_refs")
        kind = next(iter(kinds))

        if target_type == TargetType.INVOICE:
            if kind not in INVOICE_SOURCES:
                raise ValidationError(f"Cannot invoice from {kind.value}", field="source_refs")
            if group_by is not None:
                raise ValidationError("Invoices cannot be grouped by supplier", field="group_by")
            if invoice_type == InvoiceType.PROFORMA and kind not in PROFORMA_SOURCES:
                raise ValidationError(
                    f"Proforma invoices are raised from orders or quotations, not {kind.value}",
                    field="invoice_type",
                )
        elif kind not in PURCHASE_ORDER_SOURCES:
            raise ValidationError(f"Cannot raise a purchase order from {kind.value}", field="source_refs")

    # ===== WARNINGS AND LEDGER CLAMPING =====

    def _warn(self, kind: WarningKind, message: str, line_ref: Optional[str] = None) -> None:
        logger.warning(f"[{kind.value}] {message}")
        self._warnings.append(DataQualityWarning(kind=kind, message=message, line_ref=line_ref))

    def _over_fulfillment(self, message: str, line_ref: str) -> None:
        if settings.over_fulfillment_policy == "block":
            raise ValidationError(message, field="quantity")
        self._warn(WarningKind.OVER_FULFILLMENT, message, line_ref)

    def _carry(
        self,
        balance: LedgerBalance,
        requested: Decimal,
        remaining: Decimal,
        line_ref: str,
        purchase: bool = False,
    ) -> Decimal:
        """Clamp ``requested`` to what the ledger still allows and claim it
        for this call. Purchase flows check purchased quantity, invoice
        flows delivered and invoiced quantity."""
        if purchase and balance.purchased > balance.ordered:
            self._over_fulfillment(
                f"{balance.ref} already over-purchased (ordered {balance.ordered}, "
                f"purchased {balance.purchased})",
                line_ref,
            )
        elif not purchase and balance.over_fulfilled:
            self._over_fulfillment(
                f"{balance.ref} already over-fulfilled (ordered {balance.ordered}, "
                f"delivered {balance.delivered}, invoiced {balance.invoiced})",
                line_ref,
            )
        available = max(ZERO, remaining - self._claimed[balance.ref])
        quantity = min(requested, available)
        if requested > available > 0:
            self._over_fulfillment(
                f"{line_ref}: requested {requested} exceeds remaining {available}, clamped",
                line_ref,
            )
        if quantity > 0:
            self._claimed[balance.ref] += quantity
        return quantity

    def _accept(self, line_ref: str, quantity: Decimal, unit_price: Decimal, reason: str = "") -> bool:
        if quantity <= 0:
            self._warn(
                WarningKind.SKIPPED_LINE,
                f"{line_ref} skipped: no quantity left to carry{reason}",
                line_ref,
            )
            return False
        if unit_price <= 0:
            self._warn(WarningKind.SKIPPED_LINE, f"{line_ref} skipped: no unit price", line_ref)
            return False
        return True

    def _resolve_item(self, hint: ItemHint, line_ref: str) -> Item:
        item, created = self.items.ensure_item(hint)
        if created:
            self._warn(
                WarningKind.PLACEHOLDER_ITEM,
                f"{line_ref}: item {hint.item_id!r} not found, created placeholder {item.barcode}",
                line_ref,
            )
        return item

    def _match_quote_line(
        self, quotation: Optional[Quotation], order_item: SalesOrderItem, position: int, line_ref: str
    ) -> Optional[QuotationItem]:
        if order_item.quotation_item_id is not None:
            return self.db.get(QuotationItem, order_item.quotation_item_id)
        if quotation is None:
            return None
        result = self.quote_matcher.match(
            MatchTarget(
                item_id=order_item.item_id,
                description=order_item.description,
                line_number=order_item.line_number,
                position=position,
            ),
            quotation.items,
            line_ref=line_ref,
        )
        if result.low_confidence:
            self._warn(
                WarningKind.LOW_CONFIDENCE_MATCH,
                f"{line_ref}: quote line matched by {result.method.value}",
                line_ref,
            )
        return result.line

    # ===== LOADING =====

    def _load(self, model, ref: SourceRef):
        record = self.db.get(model, ref.id)
        if record is None:
            raise SourceNotFoundError(ref.kind.value, ref.id)
        return record

    # ===== INVOICES =====

    def _build_invoice(
        self, refs: List[SourceRef], invoice_type: InvoiceType, selected: Optional[Set[int]]
    ) -> DerivedDocument:
        lines: List[PendingLine] = []
        customers: Set[int] = set()
        sales_orders: List[SalesOrder] = []
        quotations: List[Quotation] = []
        delivery_ids: List[int] = []
        source_references = []

        for ref in refs:
            if ref.kind == SourceKind.DELIVERY:
                delivery = self._load(Delivery, ref)
                if delivery.sales_order is None:
                    raise ValidationError(
                        f"Delivery {delivery.delivery_number} has no linked sales order",
                        field="sales_order_id",
                    )
                order = delivery.sales_order
                lines += self._invoice_lines_from_delivery(delivery, selected)
                customers.add(order.customer_id)
                sales_orders.append(order)
                delivery_ids.append(delivery.id)
                source_references.append(
                    {"type": ref.kind.value, "id": delivery.id, "number": delivery.delivery_number}
                )
            elif ref.kind == SourceKind.SALES_ORDER:
                order = self._load(SalesOrder, ref)
                lines += self._invoice_lines_from_sales_order(order, invoice_type, selected)
                customers.add(order.customer_id)
                sales_orders.append(order)
                source_references.append(
                    {"type": ref.kind.value, "id": order.id, "number": order.order_number}
                )
            else:
                quotation = self._load(Quotation, ref)
                lines += self._invoice_lines_from_quotation(quotation, invoice_type, selected)
                customers.add(quotation.customer_id)
                quotations.append(quotation)
                source_references.append(
                    {"type": ref.kind.value, "id": quotation.id, "number": quotation.quote_number}
                )

        if len(customers) > 1:
            raise ValidationError(
                f"Source documents belong to different customers: {sorted(customers)}",
                field="source_refs",
            )

        order_ids = {order.id for order in sales_orders}
        first_order = sales_orders[0] if sales_orders else None
        first_quote = quotations[0] if quotations else None
        currencies = {
            source.currency for source in [*sales_orders, *quotations] if source.currency
        }
        if len(currencies) > 1:
            raise ValidationError(
                f"Source documents are in different currencies: {sorted(currencies)}",
                field="source_refs",
            )
        currency = next(iter(currencies), settings.default_currency)
        exchange_rate = (
            first_order.exchange_rate if first_order and first_order.exchange_rate else None
        ) or settings.default_exchange_rate

        prefix = (
            DocumentPrefix.PROFORMA_INVOICE if invoice_type == InvoiceType.PROFORMA
            else DocumentPrefix.INVOICE
        )
        document = self._assemble(
            lines,
            target_type=TargetType.INVOICE,
            prefix=prefix,
            currency=currency,
            exchange_rate=exchange_rate,
            invoice_type=invoice_type,
            customer_id=next(iter(customers)),
            sales_order_id=first_order.id if len(order_ids) == 1 else None,
            delivery_id=delivery_ids[0] if len(delivery_ids) == 1 else None,
            quotation_id=(
                first_quote.id if len(quotations) == 1
                else first_order.quotation_id if len(order_ids) == 1 else None
            ),
            source_references=source_references,
        )
        return document

    def _invoice_lines_from_delivery(
        self, delivery: Delivery, selected: Optional[Set[int]]
    ) -> List[PendingLine]:
        order = delivery.sales_order
        quotation = order.quotation
        order_items = list(order.items)
        positions = {item.id: idx for idx, item in enumerate(order_items)}

        delivery_items = list(delivery.items)
        virtual = not delivery_items
        if virtual:
            logger.info(
                f"Delivery {delivery.delivery_number} has no lines, using sales order "
                f"{order.order_number} lines"
            )
            rows = [(None, item) for item in order_items if selected is None or item.id in selected]
        else:
            rows = [
                (di, self._order_item_for_delivery_line(di, order_items))
                for di in delivery_items
                if selected is None or di.id in selected
            ]

        quote_matches: Dict[int, Optional[QuotationItem]] = {}
        for di, order_item in rows:
            if order_item is not None and order_item.id not in quote_matches:
                line_ref = f"delivery_item:{di.id}" if di is not None else f"sales_order_item:{order_item.id}"
                quote_matches[order_item.id] = self._match_quote_line(
                    quotation, order_item, positions[order_item.id], line_ref
                )
        source_lines = [
            sales_order_item_line(item, _line_id(quote_matches[item.id]))
            for _, item in rows if item is not None
        ]
        balances = self.ledger.balances(list({line.ref: line for line in source_lines}.values()))
        already_invoiced = self.ledger.invoiced_by_delivery_item(di.id for di, _ in rows if di is not None)

        lines = []
        for di, order_item in rows:
            line_ref = f"delivery_item:{di.id}" if di is not None else f"sales_order_item:{order_item.id}"

            if di is not None:
                moved = di.moved_quantity or to_decimal(di.ordered_quantity)
                if moved <= 0 and order_item is not None:
                    moved = to_decimal(order_item.quantity)
                requested = max(ZERO, moved - already_invoiced.get(di.id, ZERO))
            else:
                requested = to_decimal(order_item.quantity)

            if order_item is not None:
                balance = balances[sales_order_item_line(order_item).ref]
                quantity = self._carry(balance, requested, balance.remaining_to_invoice, line_ref)
            else:
                quantity = requested

            unit_price = to_decimal(order_item.unit_price) if order_item is not None else ZERO
            if unit_price <= 0 and di is not None:
                unit_price = to_decimal(di.unit_price)
            if not self._accept(line_ref, quantity, unit_price, " (already invoiced)"):
                continue

            quote_item = None
            if order_item is not None:
                quote_item = self._match_quote_line(quotation, order_item, positions[order_item.id], line_ref)
            lpo_item = di.supplier_lpo_item if di is not None else None

            ancestors = [
                AncestorPricing.from_record(
                    PricingSource.PURCHASE_ORDER_LINE, lpo_item,
                    basis_quantity=lpo_item.quantity if lpo_item else None,
                ),
                AncestorPricing.from_record(
                    PricingSource.QUOTE_LINE, quote_item,
                    basis_quantity=quote_item.quantity if quote_item else None,
                ),
                AncestorPricing.from_record(
                    PricingSource.ORDER_LINE, order_item,
                    basis_quantity=order_item.quantity if order_item else None,
                ),
                AncestorPricing.header(quotation),
                AncestorPricing.from_record(
                    PricingSource.DELIVERY_LINE, di,
                    basis_quantity=di.moved_quantity if di else None,
                ),
            ]

            item = self._resolve_item(
                ItemHint(
                    item_id=(di.item_id if di is not None and di.item_id else None)
                    or (order_item.item_id if order_item is not None else None),
                    barcode=di.barcode if di is not None else None,
                    supplier_code=di.supplier_code if di is not None else None,
                    description=(di.description if di is not None else None)
                    or (order_item.description if order_item is not None else None),
                ),
                line_ref,
            )
            lines.append(PendingLine(
                line_ref=line_ref,
                quantity=quantity,
                unit_price=unit_price,
                ancestors=ancestors,
                context=PricingContext.INVOICE,
                item=item,
                descriptions=DescriptionCandidates(
                    item_master=item.description,
                    item_master_is_generic=item.has_generic_description,
                    quote_line=quote_item.description if quote_item else None,
                    order_line=order_item.description if order_item else None,
                    delivery_line=di.description if di is not None else None,
                    notes=[
                        order_item.notes if order_item else None,
                        di.picking_notes if di is not None else None,
                    ],
                ),
                barcode=(di.barcode if di is not None else None) or item.barcode,
                supplier_code=(di.supplier_code if di is not None else None) or item.supplier_code,
                source_ref=sales_order_item_line(order_item).ref if order_item else None,
                sales_order_item_id=order_item.id if order_item else None,
                delivery_item_id=di.id if di is not None else None,
                quotation_item_id=_line_id(quote_item),
            ))
        return lines

    def _order_item_for_delivery_line(
        self, di: DeliveryItem, order_items: List[SalesOrderItem]
    ) -> Optional[SalesOrderItem]:
        if di.sales_order_item_id is not None:
            linked = next((item for item in order_items if item.id == di.sales_order_item_id), None)
            if linked is not None:
                return linked
        # Unlinked delivery lines only attach to an order line on a confident match
        matcher = QuoteLineMatcher(allow_low_confidence=False)
        result = matcher.match(
            MatchTarget(item_id=di.item_id, description=di.description),
            order_items,
            line_ref=f"delivery_item:{di.id}",
        )
        if result.method in (MatchMethod.ITEM_ID, MatchMethod.DESCRIPTION_EXACT):
            return result.line
        return None

    def _invoice_lines_from_sales_order(
        self, order: SalesOrder, invoice_type: InvoiceType, selected: Optional[Set[int]]
    ) -> List[PendingLine]:
        quotation = order.quotation
        order_items = list(order.items)
        chosen = [
            (idx, item) for idx, item in enumerate(order_items)
            if selected is None or item.id in selected
        ]
        proforma = invoice_type == InvoiceType.PROFORMA
        quote_matches = {
            order_item.id: self._match_quote_line(
                quotation, order_item, position, f"sales_order_item:{order_item.id}"
            )
            for position, order_item in chosen
        }
        balances = {} if proforma else self.ledger.balances([
            sales_order_item_line(item, _line_id(quote_matches[item.id])) for _, item in chosen
        ])

        lines = []
        for _, order_item in chosen:
            line_ref = f"sales_order_item:{order_item.id}"
            source_ref = sales_order_item_line(order_item).ref
            if proforma:
                quantity = to_decimal(order_item.quantity)
            else:
                balance = balances[source_ref]
                quantity = self._carry(
                    balance, balance.invoice_carry_quantity, balance.remaining_to_invoice, line_ref
                )
            unit_price = to_decimal(order_item.unit_price)
            if not self._accept(line_ref, quantity, unit_price, " (already invoiced)"):
                continue

            quote_item = quote_matches[order_item.id]
            item = self._resolve_item(
                ItemHint(item_id=order_item.item_id, description=order_item.description), line_ref
            )
            lines.append(PendingLine(
                line_ref=line_ref,
                quantity=quantity,
                unit_price=unit_price,
                ancestors=[
                    AncestorPricing.from_record(
                        PricingSource.QUOTE_LINE, quote_item,
                        basis_quantity=quote_item.quantity if quote_item else None,
                    ),
                    AncestorPricing.from_record(
                        PricingSource.ORDER_LINE, order_item, basis_quantity=order_item.quantity
                    ),
                    AncestorPricing.header(quotation),
                ],
                context=PricingContext.PROFORMA if proforma else PricingContext.INVOICE,
                item=item,
                descriptions=DescriptionCandidates(
                    item_master=item.description,
                    item_master_is_generic=item.has_generic_description,
                    quote_line=quote_item.description if quote_item else None,
                    order_line=order_item.description,
                    notes=[order_item.notes],
                ),
                barcode=item.barcode,
                supplier_code=item.supplier_code,
                source_ref=source_ref,
                sales_order_item_id=order_item.id,
                quotation_item_id=_line_id(quote_item),
            ))
        return lines

    def _invoice_lines_from_quotation(
        self, quotation: Quotation, invoice_type: InvoiceType, selected: Optional[Set[int]]
    ) -> List[PendingLine]:
        chosen = [item for item in quotation.items if selected is None or item.id in selected]
        proforma = invoice_type == InvoiceType.PROFORMA
        source_lines = [
            SourceLine(
                ref=SourceLineRef(SourceLineKind.QUOTATION_ITEM, item.id),
                ordered_quantity=to_decimal(item.quantity),
                parent_id=quotation.id,
                description=item.description,
            )
            for item in chosen
        ]
        balances = {} if proforma else self.ledger.balances(source_lines)

        lines = []
        for quote_item, source_line in zip(chosen, source_lines):
            line_ref = f"quotation_item:{quote_item.id}"
            if proforma:
                quantity = to_decimal(quote_item.quantity)
            else:
                balance = balances[source_line.ref]
                quantity = self._carry(
                    balance, balance.remaining_to_invoice, balance.remaining_to_invoice, line_ref
                )
            unit_price = to_decimal(quote_item.unit_price)
            if not self._accept(line_ref, quantity, unit_price, " (already invoiced)"):
                continue

            item = self._resolve_item(
                ItemHint(item_id=quote_item.item_id, description=quote_item.description), line_ref
            )
            lines.append(PendingLine(
                line_ref=line_ref,
                quantity=quantity,
                unit_price=unit_price,
                ancestors=[
                    AncestorPricing.from_record(
                        PricingSource.QUOTE_LINE, quote_item, basis_quantity=quote_item.quantity
                    ),
                    AncestorPricing.header(quotation),
                ],
                context=PricingContext.PROFORMA if proforma else PricingContext.INVOICE,
                item=item,
                descriptions=DescriptionCandidates(
                    item_master=item.description,
                    item_master_is_generic=item.has_generic_description,
                    quote_line=quote_item.description,
                    notes=[quote_item.notes],
                ),
                barcode=item.barcode,
                supplier_code=item.supplier_code,
                source_ref=source_line.ref,
                quotation_item_id=quote_item.id,
            ))
        return lines

    # ===== PURCHASE ORDERS =====

    def _build_purchase_orders(
        self,
        refs: List[SourceRef],
        group_by: Optional[GroupBy],
        selected: Optional[Set[int]],
        supplier_id: Optional[int],
    ) -> List[DerivedDocument]:
        lines: List[PendingLine] = []
        references_by_line: Dict[int, dict] = {}

        for ref in refs:
            if ref.kind == SourceKind.SUPPLIER_QUOTE:
                quote = self._load(SupplierQuote, ref)
                reference = {"type": ref.kind.value, "id": quote.id, "number": quote.quote_number}
                source_lines = self._lpo_lines_from_supplier_quote(quote, selected)
                currency = quote.currency
            else:
                order = self._load(SalesOrder, ref)
                reference = {"type": ref.kind.value, "id": order.id, "number": order.order_number}
                source_lines = self._lpo_lines_from_sales_order(order, selected, supplier_id)
                currency = order.currency
            for line in source_lines:
                references_by_line[id(line)] = reference
                line.currency = currency
            lines += source_lines

        source_type = (
            LpoSourceType.SUPPLIER_QUOTE if refs[0].kind == SourceKind.SUPPLIER_QUOTE
            else LpoSourceType.SALES_ORDER
        )

        if not lines:
            raise ValidationError("No processable lines: nothing to derive", field="lines")

        groups: Dict[Optional[int], List[PendingLine]] = OrderedDict()
        if group_by == GroupBy.SUPPLIER:
            for line in lines:
                groups.setdefault(line.supplier_id, []).append(line)
        else:
            suppliers = {line.supplier_id for line in lines}
            if len(suppliers) > 1:
                raise ValidationError(
                    f"Lines come from several suppliers {sorted(suppliers)}; "
                    "use group_by='supplier' to raise one purchase order each",
                    field="group_by",
                )
            groups[next(iter(suppliers), supplier_id)] = lines

        documents = []
        for group_supplier, group_lines in groups.items():
            if group_supplier is None:
                raise ValidationError("Purchase order has no supplier", field="supplier_id")
            currencies = {line.currency for line in group_lines if line.currency}
            if len(currencies) > 1:
                raise ValidationError(
                    f"Purchase order for supplier {group_supplier} mixes currencies {sorted(currencies)}",
                    field="currency",
                )
            source_references = list(OrderedDict(
                (tuple(sorted(ref.items())), ref)
                for ref in (references_by_line[id(line)] for line in group_lines)
            ).values())
            documents.append(self._assemble(
                group_lines,
                target_type=TargetType.PURCHASE_ORDER,
                prefix=DocumentPrefix.PURCHASE_ORDER,
                currency=next(iter(currencies), settings.default_currency),
                exchange_rate=settings.default_exchange_rate,
                supplier_id=group_supplier,
                lpo_source_type=source_type,
                grouping_criteria=group_by.value if group_by else None,
                source_references=source_references,
            ))

        return documents

    def _lpo_lines_from_supplier_quote(
        self, quote: SupplierQuote, selected: Optional[Set[int]]
    ) -> List[PendingLine]:
        if quote.supplier_id is None:
            self._warn(
                WarningKind.MISSING_SUPPLIER,
                f"Supplier quote {quote.quote_number} has no supplier, skipped",
                f"supplier_quote:{quote.id}",
            )
            return []

        requisition_lines = list(quote.requisition.items) if quote.requisition else []
        quote_items = [item for item in quote.items if selected is None or item.id in selected]

        if not quote.items and selected is None:
            return self._virtual_quote_line(quote)

        source_lines = []
        for quote_item in quote_items:
            quantity = to_decimal(quote_item.quantity)
            override = requisition_quantity_for(quote_item.item_description, requisition_lines)
            if override is not None and override != quantity:
                logger.info(
                    f"Supplier quote item {quote_item.id}: using requisition quantity {override} "
                    f"instead of quoted {quantity}"
                )
                quantity = override
            source_lines.append(SourceLine(
                ref=SourceLineRef(SourceLineKind.SUPPLIER_QUOTE_ITEM, quote_item.id),
                ordered_quantity=quantity,
                parent_id=quote.id,
                description=quote_item.item_description,
            ))
        balances = self.ledger.balances(source_lines)

        lines = []
        for quote_item, source_line in zip(quote_items, source_lines):
            line_ref = f"supplier_quote_item:{quote_item.id}"
            balance = balances[source_line.ref]
            quantity = self._carry(
                balance, balance.remaining_to_purchase, balance.remaining_to_purchase, line_ref,
                purchase=True,
            )
            unit_price = to_decimal(quote_item.unit_price)
            if not self._accept(line_ref, quantity, unit_price, " (already ordered)"):
                continue

            item = self._resolve_item(
                ItemHint(
                    item_id=quote_item.item_id,
                    description=quote_item.item_description,
                    supplier_id=quote.supplier_id,
                ),
                line_ref,
            )
            lines.append(PendingLine(
                line_ref=line_ref,
                quantity=quantity,
                unit_price=unit_price,
                ancestors=[
                    AncestorPricing.from_record(
                        PricingSource.QUOTE_LINE, quote_item, basis_quantity=quote_item.quantity
                    ),
                ],
                context=PricingContext.PURCHASE_ORDER_FROM_QUOTE,
                item=item,
                descriptions=DescriptionCandidates(
                    item_master=item.description,
                    item_master_is_generic=item.has_generic_description,
                    quote_line=quote_item.item_description,
                    notes=[quote_item.specification],
                ),
                barcode=item.barcode,
                supplier_code=item.supplier_code,
                supplier_id=quote.supplier_id,
                source_ref=source_line.ref,
                supplier_quote_item_id=quote_item.id,
            ))
        return lines

    def _virtual_quote_line(self, quote: SupplierQuote) -> List[PendingLine]:
        """A quote without lines is ordered as one line for its total."""
        line_ref = f"supplier_quote:{quote.id}"
        unit_price = to_decimal(quote.total_amount)
        if not self._accept(line_ref, Decimal("1"), unit_price):
            return []
        description = f"Items from supplier quote {quote.quote_number}"
        item = self._resolve_item(
            ItemHint(description=description, supplier_id=quote.supplier_id), line_ref
        )
        return [PendingLine(
            line_ref=line_ref,
            quantity=Decimal("1"),
            unit_price=unit_price,
            ancestors=[],
            context=PricingContext.PURCHASE_ORDER_FROM_QUOTE,
            item=item,
            descriptions=DescriptionCandidates(quote_line=description),
            barcode=item.barcode,
            supplier_code=item.supplier_code,
            supplier_id=quote.supplier_id,
        )]

    def _lpo_lines_from_sales_order(
        self, order: SalesOrder, selected: Optional[Set[int]], supplier_id: Optional[int]
    ) -> List[PendingLine]:
        chosen = [item for item in order.items if selected is None or item.id in selected]
        balances = self.ledger.balances([sales_order_item_line(item) for item in chosen])

        lines = []
        for order_item in chosen:
            line_ref = f"sales_order_item:{order_item.id}"
            source_ref = sales_order_item_line(order_item).ref
            balance = balances[source_ref]
            quantity = self._carry(
                balance, balance.remaining_to_purchase, balance.remaining_to_purchase, line_ref,
                purchase=True,
            )
            if quantity <= 0:
                self._warn(
                    WarningKind.SKIPPED_LINE,
                    f"{line_ref} skipped: no quantity left to carry (already ordered)",
                    line_ref,
                )
                continue

            item = self._resolve_item(
                ItemHint(item_id=order_item.item_id, description=order_item.description), line_ref
            )
            line_supplier = supplier_id or item.supplier_id
            if line_supplier is None:
                self._warn(
                    WarningKind.MISSING_SUPPLIER,
                    f"{line_ref}: item {item.id} has no supplier and none was given, skipped",
                    line_ref,
                )
                continue

            unit_cost = to_decimal(order_item.unit_price)
            if unit_cost <= 0:
                unit_cost = to_decimal(item.cost_price)
            if not self._accept(line_ref, quantity, unit_cost):
                continue

            lines.append(PendingLine(
                line_ref=line_ref,
                quantity=quantity,
                unit_price=unit_cost,
                ancestors=[
                    AncestorPricing.from_record(
                        PricingSource.ORDER_LINE, order_item, basis_quantity=order_item.quantity
                    ),
                    AncestorPricing.header(order.quotation),
                ],
                context=PricingContext.PURCHASE_ORDER_FROM_ORDER,
                item=item,
                descriptions=DescriptionCandidates(
                    item_master=item.description,
                    item_master_is_generic=item.has_generic_description,
                    order_line=order_item.description,
                ),
                barcode=item.barcode,
                supplier_code=item.supplier_code,
                supplier_id=line_supplier,
                source_ref=source_ref,
                sales_order_item_id=order_item.id,
            ))
        return lines

    # ===== ASSEMBLY =====

    def _price(self, pending: PendingLine, line_number: int) -> Optional[DerivedDocumentLine]:
        try:
            pricing = resolve(
                pending.ancestors,
                context=pending.context,
                quantity=pending.quantity,
                line_ref=pending.line_ref,
            )
            computed = pricing.compute(pending.quantity, pending.unit_price)
        except ValueError as exc:
            self._warn(WarningKind.SKIPPED_LINE, f"{pending.line_ref} skipped: {exc}", pending.line_ref)
            return None

        return DerivedDocumentLine(
            line_number=line_number,
            item_id=pending.item.id,
            description=resolve_description(pending.descriptions),
            quantity=pending.quantity,
            unit_price=pending.unit_price,
            computed=computed,
            pricing=pricing,
            barcode=pending.barcode,
            supplier_code=pending.supplier_code,
            source_ref=pending.source_ref,
            sales_order_item_id=pending.sales_order_item_id,
            delivery_item_id=pending.delivery_item_id,
            quotation_item_id=pending.quotation_item_id,
            supplier_quote_item_id=pending.supplier_quote_item_id,
        )

    def _assemble(self, pending_lines: List[PendingLine], **header) -> DerivedDocument:
        lines: List[DerivedDocumentLine] = []
        for pending in pending_lines:
            line = self._price(pending, line_number=len(lines) + 1)
            if line is not None:
                lines.append(line)

        totals = reconcile_header_totals(line.computed for line in lines)
        if totals.recovered:
            self._warn(
                WarningKind.SUBTOTAL_RECOVERED,
                f"Header subtotal recomputed from line totals: {totals.subtotal}",
            )
        return DerivedDocument(lines=lines, totals=totals, **header)
