"""Tests for quote line matching."""

from decimal import Decimal
from types import SimpleNamespace

from docflow.services.quote_matching import (
    MatchMethod,
    MatchTarget,
    QuoteLineMatcher,
    normalize_description,
    requisition_quantity_for,
)


def quote_line(item_id=None, description="", line_number=None):
    return SimpleNamespace(item_id=item_id, description=description, line_number=line_number)


class TestNormalizeDescription:

    def test_lowercase_punctuation_whitespace(self):
        assert normalize_description("  Steel-Valve,   DN50 ") == "steel valve dn50"

    def test_empty(self):
        assert normalize_description(None) == ""


class TestQuoteLineMatcher:
    """Test the degrading match chain."""

    def setup_method(self):
        self.matcher = QuoteLineMatcher()
        self.lines = [
            quote_line(item_id=1, description="Copper Pipe 15mm", line_number=1),
            quote_line(item_id=2, description="Steel Valve DN50", line_number=2),
            quote_line(item_id=3, description="PTFE Tape", line_number=3),
        ]

    def test_match_by_item_id(self):
        result = self.matcher.match(MatchTarget(item_id=2, description="something else"), self.lines)
        assert result.method == MatchMethod.ITEM_ID
        assert result.line is self.lines[1]
        assert result.low_confidence is False

    def test_match_by_exact_description(self):
        result = self.matcher.match(MatchTarget(item_id=99, description="steel valve, dn50"), self.lines)
        assert result.method == MatchMethod.DESCRIPTION_EXACT
        assert result.line is self.lines[1]

    def test_match_by_partial_description(self):
        result = self.matcher.match(MatchTarget(description="PTFE tape 12mm roll"), self.lines)
        assert result.method == MatchMethod.DESCRIPTION_PARTIAL
        assert result.line is self.lines[2]

    def test_match_by_line_number(self):
        result = self.matcher.match(MatchTarget(description="Gasket", line_number=3), self.lines)
        assert result.method == MatchMethod.LINE_NUMBER
        assert result.line is self.lines[2]

    def test_position_is_low_confidence(self):
        result = self.matcher.match(MatchTarget(description="Gasket", position=1), self.lines)
        assert result.method == MatchMethod.POSITION
        assert result.line is self.lines[1]
        assert result.low_confidence is True

    def test_first_available_is_low_confidence(self):
        result = self.matcher.match(MatchTarget(description="Gasket", position=7), self.lines)
        assert result.method == MatchMethod.FIRST_AVAILABLE
        assert result.line is self.lines[0]
        assert result.low_confidence is True

    def test_low_confidence_can_be_disabled(self):
        matcher = QuoteLineMatcher(allow_low_confidence=False)
        result = matcher.match(MatchTarget(description="Gasket", position=1), self.lines)
        assert result.method == MatchMethod.NOT_FOUND
        assert result.found is False

    def test_no_lines(self):
        result = self.matcher.match(MatchTarget(item_id=1), [])
        assert result.method == MatchMethod.NOT_FOUND
        assert result.line is None

    def test_custom_description_attribute(self):
        matcher = QuoteLineMatcher(description_attr="item_description")
        lines = [SimpleNamespace(item_id=None, item_description="Safety Gloves", line_number=None)]
        result = matcher.match(MatchTarget(description="safety gloves"), lines)
        assert result.method == MatchMethod.DESCRIPTION_EXACT


class TestRequisitionQuantity:
    """Test the requisition quantity override lookup."""

    def test_exact_description_match(self):
        lines = [
            SimpleNamespace(item_description="Safety Gloves", quantity=Decimal("40")),
            SimpleNamespace(item_description="Hard Hat", quantity=Decimal("12")),
        ]
        assert requisition_quantity_for("hard hat", lines) == Decimal("12")

    def test_partial_description_does_not_count(self):
        lines = [SimpleNamespace(item_description="Hard Hat", quantity=Decimal("12"))]
        assert requisition_quantity_for("Hard Hat with visor", lines) is None

    def test_zero_quantity_ignored(self):
        lines = [SimpleNamespace(item_description="Hard Hat", quantity=Decimal("0"))]
        assert requisition_quantity_for("Hard Hat", lines) is None

    def test_no_requisition_lines(self):
        assert requisition_quantity_for("Hard Hat", []) is None
