"""Quote line matching: find the quoted line behind an order line.

Source data often lacks a direct link between an order line and the quote
line it came from. Strategies are tried from most to least reliable and
the first hit wins; the method used is returned so callers can flag
low-confidence matches.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Generic, List, Optional, Sequence, TypeVar
import logging
import re

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MatchMethod(str, Enum):
    """Method used to match a quote line."""
    ITEM_ID = "item_id"                          # Same item master record
    DESCRIPTION_EXACT = "description_exact"      # Normalized descriptions equal
    DESCRIPTION_PARTIAL = "description_partial"  # One normalized description contains the other
    LINE_NUMBER = "line_number"                  # Same line number
    POSITION = "position"                        # Same index in the document
    FIRST_AVAILABLE = "first_available"          # Any line at all
    NOT_FOUND = "not_found"


LOW_CONFIDENCE_METHODS = frozenset({MatchMethod.POSITION, MatchMethod.FIRST_AVAILABLE})


def normalize_description(text: Optional[str]) -> str:
    """Lowercase, collapse whitespace and strip punctuation."""
    if not text:
        return ""
    text = text.lower()
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


@dataclass
class MatchTarget:
    """What is known about the line looking for its quote line."""
    item_id: Optional[int] = None
    description: Optional[str] = None
    line_number: Optional[int] = None
    position: Optional[int] = None  # 0-based index among its siblings


@dataclass
class MatchResult(Generic[T]):
    line: Optional[T]
    method: MatchMethod

    @property
    def found(self) -> bool:
        return self.line is not None

    @property
    def low_confidence(self) -> bool:
        return self.method in LOW_CONFIDENCE_METHODS


class QuoteLineMatcher:
    """Degrading match chain over the candidate lines of one quote.

    Candidates only need ``item_id``, a description attribute and
    ``line_number``; the description attribute name is configurable since
    supplier quote and requisition lines name it differently.
    """

    def __init__(
        self,
        description_attr: str = "description",
        allow_low_confidence: bool = True,
    ):
        self.description_attr = description_attr
        self.strategies: List[tuple] = [
            (MatchMethod.ITEM_ID, self.match_by_item_id),
            (MatchMethod.DESCRIPTION_EXACT, self.match_by_exact_description),
            (MatchMethod.DESCRIPTION_PARTIAL, self.match_by_partial_description),
            (MatchMethod.LINE_NUMBER, self.match_by_line_number),
        ]
        if allow_low_confidence:
            self.strategies += [
                (MatchMethod.POSITION, self.match_by_position),
                (MatchMethod.FIRST_AVAILABLE, self.match_first_available),
            ]

    def _description(self, line) -> str:
        return normalize_description(getattr(line, self.description_attr, None))

    def match_by_item_id(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        if target.item_id is None:
            return None
        return next((line for line in lines if getattr(line, "item_id", None) == target.item_id), None)

    def match_by_exact_description(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        wanted = normalize_description(target.description)
        if not wanted:
            return None
        return next((line for line in lines if self._description(line) == wanted), None)

    def match_by_partial_description(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        wanted = normalize_description(target.description)
        if not wanted:
            return None
        for line in lines:
            candidate = self._description(line)
            if candidate and (wanted in candidate or candidate in wanted):
                return line
        return None

    def match_by_line_number(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        if target.line_number is None:
            return None
        return next(
            (line for line in lines if getattr(line, "line_number", None) == target.line_number),
            None,
        )

    def match_by_position(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        if target.position is None or not 0 <= target.position < len(lines):
            return None
        return lines[target.position]

    def match_first_available(self, target: MatchTarget, lines: Sequence[T]) -> Optional[T]:
        return lines[0] if lines else None

    def match(self, target: MatchTarget, lines: Sequence[T], line_ref: str = "line") -> MatchResult:
        """Run the chain; every outcome is logged for audit."""
        lines = list(lines)
        if not lines:
            return MatchResult(line=None, method=MatchMethod.NOT_FOUND)

        for method, strategy in self.strategies:
            found = strategy(target, lines)
            if found is not None:
                if method in LOW_CONFIDENCE_METHODS:
                    logger.warning(
                        f"Quote line for {line_ref} matched by low-confidence fallback: {method.value}"
                    )
                else:
                    logger.debug(f"Quote line for {line_ref} matched by {method.value}")
                return MatchResult(line=found, method=method)

        logger.debug(f"No quote line matched for {line_ref}")
        return MatchResult(line=None, method=MatchMethod.NOT_FOUND)


def requisition_quantity_for(
    description: Optional[str],
    requisition_lines: Sequence,
) -> Optional[Decimal]:
    """Requested quantity of the requisition line describing the same goods.

    Only an exact normalized-description match counts; a guessed quantity
    would over- or under-order.
    """
    matcher = QuoteLineMatcher(description_attr="item_description", allow_low_confidence=False)
    matcher.strategies = [(MatchMethod.DESCRIPTION_EXACT, matcher.match_by_exact_description)]
    result = matcher.match(MatchTarget(description=description), requisition_lines, line_ref=description or "line")
    if result.found and result.line.quantity is not None and result.line.quantity > 0:
        return Decimal(result.line.quantity)
    return None
