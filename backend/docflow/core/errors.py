"""Error taxonomy for document derivation.

Line-level problems degrade into ``DataQualityWarning`` records collected on
the derivation result. Header-level and persistence problems raise one of the
exceptions below and leave nothing persisted.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DerivationError(Exception):
    """Base class for all derivation failures."""


class ValidationError(DerivationError):
    """The request cannot produce a valid document (no lines, zero subtotal,
    missing mandatory cross-reference)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class SourceNotFoundError(ValidationError):
    """An upstream source document does not exist."""

    def __init__(self, kind: str, source_id: int):
        self.kind = kind
        self.source_id = source_id
        super().__init__(f"{kind} {source_id} not found", field="source_refs")


class PersistenceError(DerivationError):
    """Writing a derived document failed."""


class TransientPersistenceError(PersistenceError):
    """Retryable write failure: a number collision or optional audit FK that
    survived its fallback attempt, or the database being unavailable."""


class NumberGenerationExhausted(TransientPersistenceError):
    """No unused document number was found within the retry budget."""

    def __init__(self, prefix: str, attempts: int):
        self.prefix = prefix
        self.attempts = attempts
        super().__init__(
            f"Could not generate a unique {prefix} number after {attempts} attempts"
        )


class FatalPersistenceError(PersistenceError):
    """Mandatory reference violated (customer, supplier, parent document)."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        self.constraint = constraint
        super().__init__(message)


class WarningKind(str, Enum):
    """Kind of non-fatal data-quality event."""

    PLACEHOLDER_ITEM = "placeholder_item"
    LOW_CONFIDENCE_MATCH = "low_confidence_match"
    OVER_FULFILLMENT = "over_fulfillment"
    SKIPPED_LINE = "skipped_line"
    MISSING_SUPPLIER = "missing_supplier"
    SUBTOTAL_RECOVERED = "subtotal_recovered"


@dataclass(frozen=True)
class DataQualityWarning:
    """Non-fatal problem recorded while deriving a document."""

    kind: WarningKind
    message: str
    line_ref: Optional[str] = None
