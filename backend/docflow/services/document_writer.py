"""Persist derived documents: header and lines as one unit.

Each document is written inside a savepoint. A failed insert is classified
and retried exactly once through a well-defined fallback:

- optional foreign key (``created_by`` pointing at a missing user):
  retry with ``created_by`` nulled
- unique violation on the document number: retry with a fresh number
- anything else (customer, supplier, parent document): fatal

An unreachable or locked database surfaces as TransientPersistenceError.

The writer never commits; the caller owns the outer transaction.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Union
import logging

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from docflow.core.config import settings
from docflow.core.errors import FatalPersistenceError, TransientPersistenceError
from docflow.models.invoice import Invoice, InvoiceItem, InvoiceStatus
from docflow.models.party import User
from docflow.models.supplier_lpo import LpoStatus, SupplierLpo, SupplierLpoItem
from docflow.services.derived_document import DerivedDocument, TargetType
from docflow.services.line_computation import round_unit_cost
from docflow.services.number_generator import (
    DocumentNumberGenerator, number_generator as default_number_generator, number_in_use,
)

logger = logging.getLogger(__name__)

PG_FOREIGN_KEY_VIOLATION = "23503"
PG_UNIQUE_VIOLATION = "23505"


class IntegrityErrorKind(str, Enum):
    OPTIONAL_FOREIGN_KEY = "optional_foreign_key"
    UNIQUE_NUMBER = "unique_number"
    MANDATORY_FOREIGN_KEY = "mandatory_foreign_key"
    OTHER = "other"


def classify_integrity_error(
    db: Session,
    exc: IntegrityError,
    number_column: str,
    created_by: Optional[int],
) -> IntegrityErrorKind:
    """Map a driver integrity error onto the retry policy.

    PostgreSQL reports SQLSTATE codes and constraint names. SQLite only
    says "FOREIGN KEY constraint failed", so the audit reference is checked
    directly in that case.
    """
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    message = str(orig).lower()

    if code == PG_UNIQUE_VIOLATION or "unique constraint" in message or "duplicate key" in message:
        if number_column in message:
            return IntegrityErrorKind.UNIQUE_NUMBER
        return IntegrityErrorKind.OTHER

    if code == PG_FOREIGN_KEY_VIOLATION or "foreign key constraint" in message:
        if "created_by" in message:
            return IntegrityErrorKind.OPTIONAL_FOREIGN_KEY
        if created_by is not None and db.get(User, created_by) is None:
            return IntegrityErrorKind.OPTIONAL_FOREIGN_KEY
        return IntegrityErrorKind.MANDATORY_FOREIGN_KEY

    return IntegrityErrorKind.OTHER


class DocumentWriter:
    """Writes ``DerivedDocument`` instances as Invoice or SupplierLpo rows."""

    def __init__(self, db: Session, number_generator: Optional[DocumentNumberGenerator] = None):
        self.db = db
        self.number_generator = number_generator or default_number_generator
        self.issued_numbers: List[str] = []

    def _number_column(self, document: DerivedDocument):
        if document.target_type == TargetType.INVOICE:
            return Invoice.invoice_number
        return SupplierLpo.lpo_number

    def _next_number(self, document: DerivedDocument) -> str:
        column = self._number_column(document)
        try:
            number = self.number_generator.generate(document.prefix, number_in_use(self.db, column))
        except OperationalError as exc:
            logger.error(f"Database unavailable while numbering {document.target_type.value}: {exc.orig}")
            raise TransientPersistenceError(
                f"Cannot number {document.target_type.value}, database unavailable: {exc.orig}"
            ) from exc
        self.issued_numbers.append(number)
        return number

    def release_numbers(self) -> None:
        """Hand numbers issued by this writer back to the generator once the
        transaction has committed or rolled back."""
        if self.issued_numbers:
            self.number_generator.release(self.issued_numbers)
            self.issued_numbers = []

    # ===== PERSIST (TWO-PHASE) =====

    def persist(
        self, document: DerivedDocument, created_by: Optional[int] = None
    ) -> Union[Invoice, SupplierLpo]:
        """Insert header and lines; on failure apply at most one fallback.

        Raises:
            TransientPersistenceError: the fallback insert hit the same
                retryable condition again.
            FatalPersistenceError: a mandatory reference is violated.
            TransientPersistenceError: the database is unavailable.
        """
        number_column = self._number_column(document).key
        number = self._next_number(document)

        try:
            record = self._insert(document, number, created_by)
        except IntegrityError as exc:
            kind = classify_integrity_error(self.db, exc, number_column, created_by)
            if kind == IntegrityErrorKind.OPTIONAL_FOREIGN_KEY:
                logger.warning(
                    f"created_by={created_by} rejected for {number}, retrying without audit user"
                )
                created_by = None
            elif kind == IntegrityErrorKind.UNIQUE_NUMBER:
                logger.warning(f"Document number {number} taken at insert, retrying with a new number")
                number = self._next_number(document)
            else:
                logger.error(f"Fatal integrity error persisting {number}: {exc.orig}")
                raise FatalPersistenceError(
                    f"Cannot persist {document.target_type.value}: {exc.orig}",
                    constraint=kind.value,
                ) from exc

            try:
                record = self._insert(document, number, created_by)
            except IntegrityError as retry_exc:
                retry_kind = classify_integrity_error(self.db, retry_exc, number_column, created_by)
                logger.error(f"Fallback insert of {number} failed ({retry_kind.value}): {retry_exc.orig}")
                if retry_kind in (IntegrityErrorKind.OPTIONAL_FOREIGN_KEY, IntegrityErrorKind.UNIQUE_NUMBER):
                    raise TransientPersistenceError(
                        f"Persisting {document.target_type.value} failed after retry: {retry_exc.orig}"
                    ) from retry_exc
                raise FatalPersistenceError(
                    f"Cannot persist {document.target_type.value}: {retry_exc.orig}",
                    constraint=retry_kind.value,
                ) from retry_exc

        document.number = number
        document.record_id = record.id
        logger.info(
            f"Persisted {document.target_type.value} {number} with {len(document.lines)} lines, "
            f"total {document.totals.grand_total}"
        )
        return record

    def _insert(self, document: DerivedDocument, number: str, created_by: Optional[int]):
        """One attempt: header and lines flushed inside a savepoint, so a
        failed line insert also removes the header."""
        try:
            with self.db.begin_nested():
                if document.target_type == TargetType.INVOICE:
                    record = self._build_invoice(document, number, created_by)
                else:
                    record = self._build_lpo(document, number, created_by)
                self.db.add(record)
                self.db.flush()
        except OperationalError as exc:
            logger.error(f"Database unavailable persisting {number}: {exc.orig}")
            raise TransientPersistenceError(
                f"Cannot persist {document.target_type.value}, database unavailable: {exc.orig}"
            ) from exc
        return record

    # ===== ROW BUILDERS =====

    def _build_invoice(self, document: DerivedDocument, number: str, created_by: Optional[int]) -> Invoice:
        totals = document.totals
        invoice_date = datetime.now(timezone.utc)
        invoice = Invoice(
            invoice_number=number,
            invoice_type=document.invoice_type,
            status=InvoiceStatus(document.status),
            customer_id=document.customer_id,
            sales_order_id=document.sales_order_id,
            delivery_id=document.delivery_id,
            quotation_id=document.quotation_id,
            currency=document.currency,
            exchange_rate=document.exchange_rate,
            base_currency=settings.base_currency,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_total,
            tax_rate=totals.effective_tax_rate,
            tax_amount=totals.tax_total,
            total_amount=totals.grand_total,
            paid_amount=0,
            outstanding_amount=totals.grand_total,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=settings.invoice_due_days),
            source_references=document.source_references,
            auto_generated=True,
            created_by=created_by,
        )
        for line in document.lines:
            computed = line.computed
            invoice.items.append(InvoiceItem(
                line_number=line.line_number,
                item_id=line.item_id,
                sales_order_item_id=line.sales_order_item_id,
                delivery_item_id=line.delivery_item_id,
                quotation_item_id=line.quotation_item_id,
                description=line.description,
                barcode=line.barcode,
                supplier_code=line.supplier_code,
                quantity=line.quantity,
                unit_price=line.unit_price,
                gross_amount=computed.gross,
                discount_percentage=line.pricing.discount_percent.value,
                discount_amount=computed.discount,
                net_amount=computed.net,
                tax_rate=line.pricing.vat_percent.value,
                tax_amount=computed.vat,
                total_amount=computed.total,
                pricing_sources=line.pricing.sources(),
            ))
        return invoice

    def _build_lpo(self, document: DerivedDocument, number: str, created_by: Optional[int]) -> SupplierLpo:
        totals = document.totals
        lpo = SupplierLpo(
            lpo_number=number,
            supplier_id=document.supplier_id,
            status=LpoStatus(document.status),
            source_type=document.lpo_source_type,
            grouping_criteria=document.grouping_criteria,
            source_sales_order_ids=document.source_ids("sales_order") or None,
            source_quote_ids=document.source_ids("supplier_quote") or None,
            currency=document.currency,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_total,
            tax_amount=totals.tax_total,
            total_amount=totals.grand_total,
            created_by=created_by,
        )
        for line in document.lines:
            computed = line.computed
            lpo.items.append(SupplierLpoItem(
                line_number=line.line_number,
                item_id=line.item_id,
                sales_order_item_id=line.sales_order_item_id,
                supplier_quote_item_id=line.supplier_quote_item_id,
                description=line.description,
                supplier_code=line.supplier_code,
                barcode=line.barcode,
                quantity=line.quantity,
                unit_cost=round_unit_cost(line.unit_price),
                gross_amount=computed.gross,
                discount_percentage=line.pricing.discount_percent.value,
                discount_amount=computed.discount,
                net_amount=computed.net,
                vat_percentage=line.pricing.vat_percent.value,
                vat_amount=computed.vat,
                total_cost=computed.total,
                received_quantity=0,
                pending_quantity=line.quantity,
                pricing_sources=line.pricing.sources(),
            ))
        return lpo
