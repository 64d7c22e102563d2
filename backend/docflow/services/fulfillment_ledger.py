"""Quantity Reconciliation Ledger.

Cumulative delivered/invoiced/purchased quantity of a source line is the sum
over every fulfillment event referencing it, never the latest event alone.
Balances are recomputed from the database on every call; nothing is cached,
so an event inserted by a concurrent request is seen by the next derivation.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from sqlalchemy.orm import Session

from docflow.models.delivery import Delivery, DeliveryItem
from docflow.models.invoice import Invoice, InvoiceItem, InvoiceStatus, InvoiceType
from docflow.models.sales_order import SalesOrderItem
from docflow.models.supplier_lpo import LpoStatus, SupplierLpo, SupplierLpoItem

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class EventKind(str, Enum):
    DELIVERY = "delivery"
    INVOICE = "invoice"
    PURCHASE = "purchase"


class SourceLineKind(str, Enum):
    SALES_ORDER_ITEM = "sales_order_item"
    QUOTATION_ITEM = "quotation_item"
    SUPPLIER_QUOTE_ITEM = "supplier_quote_item"


@dataclass(frozen=True)
class SourceLineRef:
    kind: SourceLineKind
    line_id: int

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.line_id}"


@dataclass(frozen=True)
class SourceLine:
    """An ordered line of an upstream document.

    ``linked_quotation_item_id`` ties a sales order line to the quotation
    line it was raised from; invoices raised on that quotation line
    directly count as invoiced on the order line too.
    """

    ref: SourceLineRef
    ordered_quantity: Decimal
    parent_id: Optional[int] = None
    description: Optional[str] = None
    linked_quotation_item_id: Optional[int] = None

    def __post_init__(self):
        if self.ordered_quantity < 0:
            raise ValueError(f"Ordered quantity of {self.ref} is negative: {self.ordered_quantity}")


@dataclass(frozen=True)
class FulfillmentEvent:
    """A quantity movement against a source line (None for ad-hoc lines)."""

    kind: EventKind
    quantity: Decimal
    source_ref: Optional[SourceLineRef]
    document_ref: str
    occurred_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerBalance:
    ref: SourceLineRef
    ordered: Decimal
    delivered: Decimal
    invoiced: Decimal
    purchased: Decimal
    remaining: Decimal
    over_fulfilled: bool

    @property
    def remaining_to_deliver(self) -> Decimal:
        return max(ZERO, self.ordered - self.delivered)

    @property
    def remaining_to_invoice(self) -> Decimal:
        return max(ZERO, self.ordered - self.invoiced)

    @property
    def remaining_to_purchase(self) -> Decimal:
        return max(ZERO, self.ordered - self.purchased)

    @property
    def invoice_carry_quantity(self) -> Decimal:
        """Quantity an "all remaining" invoice should carry: what has been
        delivered (or the ordered quantity before any delivery), less what
        is already invoiced."""
        basis = self.delivered if self.delivered > 0 else self.ordered
        return max(ZERO, min(self.ordered, basis) - self.invoiced)


class QuantitySource(str, Enum):
    """Where an LPO line's actual quantity was taken from."""

    DELIVERY = "delivery"
    INVOICE = "invoice"
    ORIGINAL = "original"


@dataclass(frozen=True)
class LpoLineQuantity:
    lpo_item_id: int
    sales_order_item_id: Optional[int]
    lpo_quantity: Decimal
    actual_quantity: Decimal
    source: QuantitySource
    references: Tuple[str, ...] = ()


def remaining(source_line: SourceLine, events: Iterable[FulfillmentEvent]) -> LedgerBalance:
    """Aggregate every event referencing ``source_line`` into a balance.

    ``remaining`` is ordered minus the larger of delivered and invoiced,
    clamped at zero. Overshoot is reported through ``over_fulfilled``.
    """
    totals: Dict[EventKind, Decimal] = defaultdict(lambda: ZERO)
    for event in events:
        if event.source_ref != source_line.ref:
            continue
        totals[event.kind] += Decimal(event.quantity)

    ordered = Decimal(source_line.ordered_quantity)
    delivered = totals[EventKind.DELIVERY]
    invoiced = totals[EventKind.INVOICE]
    fulfilled = max(delivered, invoiced)
    over_fulfilled = fulfilled > ordered

    if over_fulfilled:
        logger.warning(
            f"Source line {source_line.ref} over-fulfilled: ordered {ordered}, "
            f"delivered {delivered}, invoiced {invoiced}; remaining clamped to 0"
        )

    return LedgerBalance(
        ref=source_line.ref,
        ordered=ordered,
        delivered=delivered,
        invoiced=invoiced,
        purchased=totals[EventKind.PURCHASE],
        remaining=max(ZERO, ordered - fulfilled),
        over_fulfilled=over_fulfilled,
    )


class FulfillmentLedgerService:
    """Loads fulfillment events from the database and computes balances.

    Cancelled deliveries, invoices and purchase orders do not count.
    Proforma invoices are requests for payment, not fulfillment, and are
    excluded as well.
    """

    def __init__(self, db: Session):
        self.db = db

    # ===== EVENT LOADING =====

    def _delivery_events(self, ids: List[int]) -> List[FulfillmentEvent]:
        rows = (
            self.db.query(DeliveryItem, Delivery)
            .join(Delivery, DeliveryItem.delivery_id == Delivery.id)
            .filter(
                DeliveryItem.sales_order_item_id.in_(ids),
                Delivery.status != "Cancelled",
            )
            .all()
        )
        return [
            FulfillmentEvent(
                kind=EventKind.DELIVERY,
                quantity=item.moved_quantity,
                source_ref=SourceLineRef(SourceLineKind.SALES_ORDER_ITEM, item.sales_order_item_id),
                document_ref=delivery.delivery_number,
                occurred_at=delivery.delivery_date,
            )
            for item, delivery in rows
        ]

    def _invoice_events(self, column, kind: SourceLineKind, ids: List[int]) -> List[FulfillmentEvent]:
        rows = (
            self.db.query(InvoiceItem, Invoice)
            .join(Invoice, InvoiceItem.invoice_id == Invoice.id)
            .filter(
                column.in_(ids),
                Invoice.invoice_type == InvoiceType.FINAL,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
            .all()
        )
        return [
            FulfillmentEvent(
                kind=EventKind.INVOICE,
                quantity=Decimal(item.quantity),
                source_ref=SourceLineRef(kind, getattr(item, column.key)),
                document_ref=invoice.invoice_number,
                occurred_at=invoice.invoice_date,
            )
            for item, invoice in rows
        ]

    def _purchase_events(self, column, kind: SourceLineKind, ids: List[int]) -> List[FulfillmentEvent]:
        rows = (
            self.db.query(SupplierLpoItem, SupplierLpo)
            .join(SupplierLpo, SupplierLpoItem.lpo_id == SupplierLpo.id)
            .filter(column.in_(ids), SupplierLpo.status != LpoStatus.CANCELLED)
            .all()
        )
        return [
            FulfillmentEvent(
                kind=EventKind.PURCHASE,
                quantity=Decimal(item.quantity),
                source_ref=SourceLineRef(kind, getattr(item, column.key)),
                document_ref=lpo.lpo_number,
                occurred_at=lpo.lpo_date,
            )
            for item, lpo in rows
        ]

    def _direct_quotation_invoice_events(
        self, links: Dict[int, List[SourceLineRef]]
    ) -> List[FulfillmentEvent]:
        """Invoice lines raised on a quotation line without an order line,
        re-targeted to the order lines raised from that quotation line."""
        rows = (
            self.db.query(InvoiceItem, Invoice)
            .join(Invoice, InvoiceItem.invoice_id == Invoice.id)
            .filter(
                InvoiceItem.quotation_item_id.in_(list(links)),
                InvoiceItem.sales_order_item_id.is_(None),
                Invoice.invoice_type == InvoiceType.FINAL,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
            .all()
        )
        return [
            FulfillmentEvent(
                kind=EventKind.INVOICE,
                quantity=Decimal(item.quantity),
                source_ref=ref,
                document_ref=invoice.invoice_number,
                occurred_at=invoice.invoice_date,
            )
            for item, invoice in rows
            for ref in links[item.quotation_item_id]
        ]

    def load_events(
        self,
        refs: Iterable[SourceLineRef],
        quotation_links: Optional[Dict[int, List[SourceLineRef]]] = None,
    ) -> List[FulfillmentEvent]:
        """Fetch every persisted event for the given source lines in one
        query per event table.

        ``quotation_links`` maps a quotation line id to the order lines
        raised from it.
        """
        ids_by_kind: Dict[SourceLineKind, List[int]] = defaultdict(list)
        for ref in refs:
            ids_by_kind[ref.kind].append(ref.line_id)

        events: List[FulfillmentEvent] = []

        so_ids = ids_by_kind.get(SourceLineKind.SALES_ORDER_ITEM)
        if so_ids:
            events += self._delivery_events(so_ids)
            events += self._invoice_events(
                InvoiceItem.sales_order_item_id, SourceLineKind.SALES_ORDER_ITEM, so_ids
            )
            events += self._purchase_events(
                SupplierLpoItem.sales_order_item_id, SourceLineKind.SALES_ORDER_ITEM, so_ids
            )

        quote_ids = ids_by_kind.get(SourceLineKind.QUOTATION_ITEM)
        if quote_ids:
            events += self._invoice_events(
                InvoiceItem.quotation_item_id, SourceLineKind.QUOTATION_ITEM, quote_ids
            )

        supplier_quote_ids = ids_by_kind.get(SourceLineKind.SUPPLIER_QUOTE_ITEM)
        if supplier_quote_ids:
            events += self._purchase_events(
                SupplierLpoItem.supplier_quote_item_id,
                SourceLineKind.SUPPLIER_QUOTE_ITEM,
                supplier_quote_ids,
            )

        if quotation_links:
            events += self._direct_quotation_invoice_events(quotation_links)

        logger.debug(f"Loaded {len(events)} fulfillment events for {dict(ids_by_kind)}")
        return events

    # ===== BALANCES =====

    def balances(self, source_lines: Sequence[SourceLine]) -> Dict[SourceLineRef, LedgerBalance]:
        """Balances for many lines from freshly loaded events."""
        if not source_lines:
            return {}
        quotation_links: Dict[int, List[SourceLineRef]] = defaultdict(list)
        for line in source_lines:
            if line.linked_quotation_item_id is None:
                continue
            linked = quotation_links[line.linked_quotation_item_id]
            if line.ref not in linked:
                linked.append(line.ref)
        events = self.load_events((line.ref for line in source_lines), quotation_links)

        by_ref: Dict[SourceLineRef, List[FulfillmentEvent]] = defaultdict(list)
        for event in events:
            by_ref[event.source_ref].append(event)
        return {line.ref: remaining(line, by_ref[line.ref]) for line in source_lines}

    def balance(self, source_line: SourceLine) -> LedgerBalance:
        return self.balances([source_line])[source_line.ref]

    def sales_order_item_balance(self, sales_order_item_id: int) -> Optional[LedgerBalance]:
        item = self.db.get(SalesOrderItem, sales_order_item_id)
        if item is None:
            return None
        return self.balance(sales_order_item_line(item))

    def sales_order_balances(self, sales_order_id: int) -> List[LedgerBalance]:
        """Balances of every line of one sales order, in line order."""
        items = (
            self.db.query(SalesOrderItem)
            .filter(SalesOrderItem.sales_order_id == sales_order_id)
            .order_by(SalesOrderItem.id)
            .all()
        )
        lines = [sales_order_item_line(item) for item in items]
        balances = self.balances(lines)
        return [balances[line.ref] for line in lines]

    def invoiced_by_delivery_item(self, delivery_item_ids: Iterable[int]) -> Dict[int, Decimal]:
        """Quantity already invoiced against each delivery line."""
        ids = list(delivery_item_ids)
        if not ids:
            return {}
        rows = (
            self.db.query(InvoiceItem.delivery_item_id, InvoiceItem.quantity)
            .join(Invoice, InvoiceItem.invoice_id == Invoice.id)
            .filter(
                InvoiceItem.delivery_item_id.in_(ids),
                Invoice.invoice_type == InvoiceType.FINAL,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
            .all()
        )
        totals: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        for delivery_item_id, qty in rows:
            totals[delivery_item_id] += Decimal(qty)
        return dict(totals)

    # ===== PURCHASE ORDER QUANTITIES =====

    def lpo_actual_quantities(self, lpo_id: int) -> Optional[List[LpoLineQuantity]]:
        """Quantity each LPO line should carry given what actually moved.

        For lines raised from a sales order line, the sum over every
        delivery of that order line wins; with nothing delivered the sum
        over its final invoices is used; otherwise the LPO quantity stands.
        Returns None when the LPO does not exist.
        """
        lpo = self.db.get(SupplierLpo, lpo_id)
        if lpo is None:
            return None

        lpo_items = list(lpo.items)
        refs = [
            SourceLineRef(SourceLineKind.SALES_ORDER_ITEM, item.sales_order_item_id)
            for item in lpo_items
            if item.sales_order_item_id is not None
        ]
        by_ref: Dict[SourceLineRef, List[FulfillmentEvent]] = defaultdict(list)
        for event in self.load_events(refs):
            if event.quantity > 0:
                by_ref[event.source_ref].append(event)

        quantities = []
        for lpo_item in lpo_items:
            lpo_quantity = Decimal(lpo_item.quantity)
            events: List[FulfillmentEvent] = []
            if lpo_item.sales_order_item_id is not None:
                events = by_ref[SourceLineRef(SourceLineKind.SALES_ORDER_ITEM, lpo_item.sales_order_item_id)]

            source = QuantitySource.ORIGINAL
            chosen: List[FulfillmentEvent] = []
            for kind, candidate in (
                (EventKind.DELIVERY, QuantitySource.DELIVERY),
                (EventKind.INVOICE, QuantitySource.INVOICE),
            ):
                chosen = [event for event in events if event.kind == kind]
                if chosen:
                    source = candidate
                    break

            actual = sum((event.quantity for event in chosen), ZERO) if chosen else lpo_quantity
            references = tuple(dict.fromkeys(event.document_ref for event in chosen))
            if actual != lpo_quantity:
                logger.info(
                    f"LPO {lpo.lpo_number} line {lpo_item.line_number}: {source.value} quantity "
                    f"{actual} differs from ordered {lpo_quantity} ({', '.join(references)})"
                )
            quantities.append(LpoLineQuantity(
                lpo_item_id=lpo_item.id,
                sales_order_item_id=lpo_item.sales_order_item_id,
                lpo_quantity=lpo_quantity,
                actual_quantity=actual,
                source=source,
                references=references,
            ))
        return quantities


def sales_order_item_line(
    item: SalesOrderItem, quotation_item_id: Optional[int] = None
) -> SourceLine:
    """Ledger line of an order item, linked to its quotation line when known."""
    return SourceLine(
        ref=SourceLineRef(SourceLineKind.SALES_ORDER_ITEM, item.id),
        ordered_quantity=Decimal(item.quantity),
        parent_id=item.sales_order_id,
        description=item.description,
        linked_quotation_item_id=quotation_item_id or item.quotation_item_id,
    )
