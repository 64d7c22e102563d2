"""Document number generation with bounded collision retry.

Numbers are ``<PREFIX>-<YYYYMMDDHHMMSS>-<seq>`` where ``seq`` comes from a
process-wide monotonic counter. Candidates are checked against the store
and against numbers handed out in this process and not yet released; a
taken candidate is retried up to ``number_max_attempts`` times. The unique
constraint on the number column remains the final arbiter across processes (see
``DocumentWriter``).
"""

from datetime import datetime, timezone
from enum import Enum
from itertools import count
from threading import Lock
from typing import Callable, Iterable, Optional, Set
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from docflow.core.config import settings
from docflow.core.errors import NumberGenerationExhausted

logger = logging.getLogger(__name__)


class DocumentPrefix(str, Enum):
    INVOICE = "INV"
    PROFORMA_INVOICE = "PFINV"
    PURCHASE_ORDER = "LPO"
    QUOTATION = "QT"
    SUPPLIER_QUOTE = "SQ"


CandidateFactory = Callable[[str, int], str]


class DocumentNumberGenerator:
    """Thread-safe generator shared by every derivation in the process."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        candidate_factory: Optional[CandidateFactory] = None,
    ):
        self.max_attempts = max_attempts or settings.number_max_attempts
        self._candidate_factory = candidate_factory or self._default_candidate
        self._counter = count(1)
        self._lock = Lock()
        self._issued: Set[str] = set()

    def _default_candidate(self, prefix: str, attempt: int) -> str:
        with self._lock:
            seq = next(self._counter)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"{prefix}-{stamp}-{seq:04d}"

    def generate(self, prefix, is_taken: Callable[[str], bool]) -> str:
        """Return a number unused both in the store and in this process.

        Args:
            prefix: DocumentPrefix or raw prefix string.
            is_taken: checks whether the store already holds a number.

        Raises:
            NumberGenerationExhausted: every attempt collided.
        """
        prefix = prefix.value if isinstance(prefix, DocumentPrefix) else str(prefix)

        for attempt in range(1, self.max_attempts + 1):
            candidate = self._candidate_factory(prefix, attempt)
            with self._lock:
                if candidate in self._issued:
                    logger.info(f"Number {candidate} already issued in-process (attempt {attempt})")
                    continue
                self._issued.add(candidate)
            if is_taken(candidate):
                logger.info(f"Number {candidate} already in use (attempt {attempt})")
                continue
            logger.debug(f"Generated {prefix} number {candidate} on attempt {attempt}")
            return candidate

        logger.error(f"Exhausted {self.max_attempts} attempts generating a {prefix} number")
        raise NumberGenerationExhausted(prefix, self.max_attempts)

    def release(self, numbers: Iterable[str]) -> None:
        """Forget numbers whose transaction has ended.

        Committed numbers are caught by the store check from then on;
        rolled back ones are free to be issued again.
        """
        with self._lock:
            self._issued.difference_update(numbers)

    @property
    def pending_count(self) -> int:
        """Numbers handed out and not yet released."""
        with self._lock:
            return len(self._issued)


def number_in_use(db: Session, column) -> Callable[[str], bool]:
    """``is_taken`` callback checking a unique number column."""

    def check(candidate: str) -> bool:
        return db.execute(select(column).where(column == candidate).limit(1)).first() is not None

    return check


# Shared by all requests in the process
number_generator = DocumentNumberGenerator()
