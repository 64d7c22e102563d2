"""Tests for persisting derived documents and the insert fallback policy."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from docflow.core.errors import FatalPersistenceError, TransientPersistenceError
from docflow.models.invoice import Invoice, InvoiceStatus, InvoiceType
from docflow.models.supplier_lpo import LpoSourceType, SupplierLpo
from docflow.services.derived_document import DerivedDocument, DerivedDocumentLine, TargetType
from docflow.services.document_writer import (
    DocumentWriter,
    IntegrityErrorKind,
    classify_integrity_error,
)
from docflow.services.line_computation import reconcile_header_totals
from docflow.services.number_generator import DocumentNumberGenerator, DocumentPrefix
from docflow.services.pricing_resolver import AncestorPricing, PricingSource, resolve


class ScriptedNumbers:
    """Hands out a fixed sequence of numbers, bypassing the store check."""

    def __init__(self, *numbers):
        self.numbers = list(numbers)

    def generate(self, prefix, is_taken):
        return self.numbers.pop(0)


def make_document(target_type=TargetType.INVOICE, customer_id=None, supplier_id=None,
                  item_id=None, unit_price=Decimal("50")):
    pricing = resolve([AncestorPricing(source=PricingSource.ORDER_LINE, vat_percent=Decimal("10"))])
    computed = pricing.compute(Decimal("2"), unit_price)
    line = DerivedDocumentLine(
        line_number=1,
        item_id=item_id,
        description="Steel Valve DN50",
        quantity=Decimal("2"),
        unit_price=unit_price,
        computed=computed,
        pricing=pricing,
    )
    if target_type == TargetType.INVOICE:
        return DerivedDocument(
            target_type=target_type,
            prefix=DocumentPrefix.INVOICE,
            lines=[line],
            totals=reconcile_header_totals([computed]),
            currency="BHD",
            exchange_rate=Decimal("1.0000"),
            invoice_type=InvoiceType.FINAL,
            customer_id=customer_id,
            source_references=[{"type": "sales_order", "id": 1, "number": "SO-0001"}],
        )
    return DerivedDocument(
        target_type=target_type,
        prefix=DocumentPrefix.PURCHASE_ORDER,
        lines=[line],
        totals=reconcile_header_totals([computed]),
        currency="BHD",
        exchange_rate=Decimal("1.0000"),
        supplier_id=supplier_id,
        lpo_source_type=LpoSourceType.SUPPLIER_QUOTE,
        source_references=[{"type": "supplier_quote", "id": 7, "number": "SQ-7"}],
    )


class TestPersistInvoice:
    """Test invoice header and line persistence."""

    def test_persists_header_and_lines(self, db_session, test_customer, test_item, number_generator):
        document = make_document(customer_id=test_customer.id, item_id=test_item.id)
        record = DocumentWriter(db_session, number_generator).persist(document)
        db_session.commit()

        assert document.number.startswith("INV-")
        assert document.record_id == record.id

        invoice = db_session.get(Invoice, record.id)
        assert invoice.invoice_number == document.number
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.subtotal == Decimal("100.00")
        assert invoice.tax_amount == Decimal("10.00")
        assert invoice.total_amount == Decimal("110.00")
        assert invoice.outstanding_amount == Decimal("110.00")
        assert invoice.tax_rate == Decimal("10.00")
        assert invoice.due_date > invoice.invoice_date
        assert invoice.source_references == [{"type": "sales_order", "id": 1, "number": "SO-0001"}]
        assert len(invoice.items) == 1
        assert invoice.items[0].pricing_sources["vat_percent"] == "order_line"

    def test_keeps_existing_audit_user(self, db_session, test_customer, test_item, test_user, number_generator):
        document = make_document(customer_id=test_customer.id, item_id=test_item.id)
        record = DocumentWriter(db_session, number_generator).persist(document, created_by=test_user.id)
        assert record.created_by == test_user.id

    def test_missing_audit_user_falls_back_to_null(self, db_session, test_customer, test_item, number_generator):
        """An unknown created_by is dropped and the insert retried once."""
        document = make_document(customer_id=test_customer.id, item_id=test_item.id)
        record = DocumentWriter(db_session, number_generator).persist(document, created_by=4242)
        db_session.commit()

        invoice = db_session.get(Invoice, record.id)
        assert invoice.created_by is None
        assert db_session.query(Invoice).count() == 1

    def test_missing_customer_is_fatal(self, db_session, test_item, number_generator):
        document = make_document(customer_id=9999, item_id=test_item.id)
        with pytest.raises(FatalPersistenceError) as exc_info:
            DocumentWriter(db_session, number_generator).persist(document)

        assert exc_info.value.constraint == IntegrityErrorKind.MANDATORY_FOREIGN_KEY.value
        assert document.number is None
        assert db_session.query(Invoice).count() == 0

    def test_number_collision_retried_with_fresh_number(self, db_session, test_customer, test_item):
        first = make_document(customer_id=test_customer.id, item_id=test_item.id)
        DocumentWriter(db_session, ScriptedNumbers("INV-DUP")).persist(first)
        db_session.commit()

        second = make_document(customer_id=test_customer.id, item_id=test_item.id)
        DocumentWriter(db_session, ScriptedNumbers("INV-DUP", "INV-FRESH")).persist(second)
        db_session.commit()

        assert second.number == "INV-FRESH"
        assert db_session.query(Invoice).count() == 2

    def test_second_collision_is_transient(self, db_session, test_customer, test_item):
        first = make_document(customer_id=test_customer.id, item_id=test_item.id)
        DocumentWriter(db_session, ScriptedNumbers("INV-DUP")).persist(first)
        db_session.commit()

        second = make_document(customer_id=test_customer.id, item_id=test_item.id)
        with pytest.raises(TransientPersistenceError):
            DocumentWriter(db_session, ScriptedNumbers("INV-DUP", "INV-DUP")).persist(second)
        assert db_session.query(Invoice).count() == 1

    def test_failed_line_removes_header(self, db_session, test_customer, number_generator):
        """A line pointing at a missing item rolls back its header too."""
        document = make_document(customer_id=test_customer.id, item_id=9999)
        with pytest.raises(FatalPersistenceError):
            DocumentWriter(db_session, number_generator).persist(document)
        assert db_session.query(Invoice).count() == 0

    def test_locked_database_is_transient(
        self, db_session, test_customer, test_item, number_generator, monkeypatch
    ):
        def locked(*args, **kwargs):
            raise OperationalError("INSERT INTO invoices ...", {}, Exception("database is locked"))

        monkeypatch.setattr(DocumentWriter, "_build_invoice", locked)
        document = make_document(customer_id=test_customer.id, item_id=test_item.id)

        with pytest.raises(TransientPersistenceError) as exc_info:
            DocumentWriter(db_session, number_generator).persist(document)
        assert "database is locked" in str(exc_info.value)
        assert db_session.query(Invoice).count() == 0

    def test_issued_numbers_released(self, db_session, test_customer, test_item):
        generator = DocumentNumberGenerator(
            max_attempts=1, candidate_factory=lambda prefix, attempt: f"{prefix}-ONLY"
        )
        writer = DocumentWriter(db_session, generator)
        writer.persist(make_document(customer_id=test_customer.id, item_id=test_item.id))
        assert writer.issued_numbers == ["INV-ONLY"]
        db_session.rollback()

        writer.release_numbers()

        assert writer.issued_numbers == []
        assert generator.pending_count == 0
        assert generator.generate(DocumentPrefix.INVOICE, lambda n: False) == "INV-ONLY"



class TestPersistPurchaseOrder:
    """Test supplier LPO persistence."""

    def test_persists_lpo(self, db_session, test_supplier, test_item, number_generator):
        document = make_document(
            TargetType.PURCHASE_ORDER, supplier_id=test_supplier.id, item_id=test_item.id,
            unit_price=Decimal("12.3456"),
        )
        record = DocumentWriter(db_session, number_generator).persist(document)
        db_session.commit()

        lpo = db_session.get(SupplierLpo, record.id)
        assert lpo.lpo_number.startswith("LPO-")
        assert lpo.source_type == LpoSourceType.SUPPLIER_QUOTE
        assert lpo.source_quote_ids == [7]
        assert lpo.source_sales_order_ids is None
        line = lpo.items[0]
        assert line.unit_cost == Decimal("12.346")
        assert line.pending_quantity == Decimal("2")
        assert line.received_quantity == Decimal("0")
        assert line.total_cost == Decimal("27.16")

    def test_missing_supplier_is_fatal(self, db_session, test_item, number_generator):
        document = make_document(TargetType.PURCHASE_ORDER, supplier_id=9999, item_id=test_item.id)
        with pytest.raises(FatalPersistenceError):
            DocumentWriter(db_session, number_generator).persist(document)
        assert db_session.query(SupplierLpo).count() == 0


class FakeDriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def integrity_error(message, pgcode=None):
    return IntegrityError("INSERT ...", {}, FakeDriverError(message, pgcode))


class TestClassifyIntegrityError:
    """Test mapping driver errors onto the fallback policy."""

    def test_postgres_unique_number(self, db_session):
        exc = integrity_error(
            'duplicate key value violates unique constraint "invoices_invoice_number_key"', "23505"
        )
        assert classify_integrity_error(db_session, exc, "invoice_number", None) == IntegrityErrorKind.UNIQUE_NUMBER

    def test_postgres_unique_other_column(self, db_session):
        exc = integrity_error('duplicate key value violates unique constraint "items_barcode_key"', "23505")
        assert classify_integrity_error(db_session, exc, "invoice_number", None) == IntegrityErrorKind.OTHER

    def test_postgres_created_by_fk(self, db_session):
        exc = integrity_error(
            'insert or update on table "invoices" violates foreign key constraint "invoices_created_by_fkey"',
            "23503",
        )
        assert classify_integrity_error(db_session, exc, "invoice_number", 5) == IntegrityErrorKind.OPTIONAL_FOREIGN_KEY

    def test_postgres_customer_fk(self, db_session):
        exc = integrity_error(
            'insert or update on table "invoices" violates foreign key constraint "invoices_customer_id_fkey"',
            "23503",
        )
        assert classify_integrity_error(db_session, exc, "invoice_number", None) == IntegrityErrorKind.MANDATORY_FOREIGN_KEY

    def test_sqlite_fk_with_missing_user(self, db_session):
        exc = integrity_error("FOREIGN KEY constraint failed")
        assert classify_integrity_error(db_session, exc, "invoice_number", 77) == IntegrityErrorKind.OPTIONAL_FOREIGN_KEY

    def test_sqlite_fk_with_existing_user(self, db_session, test_user):
        exc = integrity_error("FOREIGN KEY constraint failed")
        assert classify_integrity_error(
            db_session, exc, "invoice_number", test_user.id
        ) == IntegrityErrorKind.MANDATORY_FOREIGN_KEY

    def test_not_null_is_other(self, db_session):
        exc = integrity_error('null value in column "subtotal" violates not-null constraint', "23502")
        assert classify_integrity_error(db_session, exc, "invoice_number", None) == IntegrityErrorKind.OTHER
