"""Tests for document number generation."""

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from docflow.core.errors import NumberGenerationExhausted, TransientPersistenceError
from docflow.models.invoice import Invoice
from docflow.services.number_generator import (
    DocumentNumberGenerator,
    DocumentPrefix,
    number_in_use,
)


def never_taken(candidate):
    return False


class TestDocumentNumberGenerator:
    """Test numbering format, uniqueness and bounded retry."""

    def test_format(self, number_generator):
        number = number_generator.generate(DocumentPrefix.INVOICE, never_taken)
        assert re.fullmatch(r"INV-\d{14}-\d{4}", number)

    @pytest.mark.parametrize("prefix,expected", [
        (DocumentPrefix.PROFORMA_INVOICE, "PFINV-"),
        (DocumentPrefix.PURCHASE_ORDER, "LPO-"),
        (DocumentPrefix.QUOTATION, "QT-"),
        (DocumentPrefix.SUPPLIER_QUOTE, "SQ-"),
        ("CN", "CN-"),
    ])
    def test_prefixes(self, number_generator, prefix, expected):
        assert number_generator.generate(prefix, never_taken).startswith(expected)

    def test_sequential_calls_are_unique(self, number_generator):
        numbers = {number_generator.generate("INV", never_taken) for _ in range(200)}
        assert len(numbers) == 200

    def test_concurrent_calls_are_unique(self, number_generator):
        """Many threads generating at once never receive the same number."""
        with ThreadPoolExecutor(max_workers=16) as pool:
            numbers = list(pool.map(
                lambda _: number_generator.generate(DocumentPrefix.INVOICE, never_taken),
                range(500),
            ))
        assert len(set(numbers)) == 500

    def test_taken_candidates_are_retried(self):
        candidates = iter(["INV-1", "INV-2", "INV-3"])
        generator = DocumentNumberGenerator(
            max_attempts=5, candidate_factory=lambda prefix, attempt: next(candidates)
        )
        taken = {"INV-1", "INV-2"}
        assert generator.generate("INV", lambda n: n in taken) == "INV-3"

    def test_exhaustion_raises(self):
        generator = DocumentNumberGenerator(
            max_attempts=3, candidate_factory=lambda prefix, attempt: f"{prefix}-{attempt}"
        )
        with pytest.raises(NumberGenerationExhausted) as exc_info:
            generator.generate("LPO", lambda n: True)
        assert exc_info.value.attempts == 3
        assert exc_info.value.prefix == "LPO"
        assert isinstance(exc_info.value, TransientPersistenceError)

    def test_number_issued_in_process_is_not_reissued(self):
        generator = DocumentNumberGenerator(
            max_attempts=2, candidate_factory=lambda prefix, attempt: f"{prefix}-FIXED"
        )
        assert generator.generate("INV", never_taken) == "INV-FIXED"
        with pytest.raises(NumberGenerationExhausted):
            generator.generate("INV", never_taken)

    def test_released_number_can_be_reissued(self):
        generator = DocumentNumberGenerator(
            max_attempts=1, candidate_factory=lambda prefix, attempt: f"{prefix}-FIXED"
        )
        assert generator.generate("INV", never_taken) == "INV-FIXED"
        assert generator.pending_count == 1

        generator.release(["INV-FIXED"])

        assert generator.pending_count == 0
        assert generator.generate("INV", never_taken) == "INV-FIXED"

    def test_release_ignores_unknown_numbers(self, number_generator):
        number = number_generator.generate("INV", never_taken)
        number_generator.release(["INV-NEVER-ISSUED", number])
        assert number_generator.pending_count == 0


    def test_default_attempts_from_settings(self):
        from docflow.core.config import settings
        assert DocumentNumberGenerator().max_attempts == settings.number_max_attempts


class TestNumberInUse:
    """Test the store lookup callback."""

    def test_checks_existing_numbers(self, db_session, test_customer):
        db_session.add(Invoice(
            invoice_number="INV-EXISTING",
            customer_id=test_customer.id,
            subtotal=Decimal("1"),
            total_amount=Decimal("1"),
            outstanding_amount=Decimal("1"),
            invoice_date=datetime.now(timezone.utc),
        ))
        db_session.commit()

        is_taken = number_in_use(db_session, Invoice.invoice_number)
        assert is_taken("INV-EXISTING") is True
        assert is_taken("INV-NEW") is False
