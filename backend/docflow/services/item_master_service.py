"""Item master lookups and placeholder creation for derived lines."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Optional, Tuple
import logging

from sqlalchemy.orm import Session

from docflow.core.config import settings
from docflow.models.item import Item

logger = logging.getLogger(__name__)

_placeholder_seq = count(1)


@dataclass
class ItemHint:
    """What a source line knows about its item."""
    item_id: Optional[int] = None
    barcode: Optional[str] = None
    supplier_code: Optional[str] = None
    description: Optional[str] = None
    supplier_id: Optional[int] = None


class ItemMasterService:
    """Resolve an item record for a line, creating a minimal one if needed."""

    def __init__(self, db: Session):
        self.db = db

    def find_item(self, hint: ItemHint) -> Optional[Item]:
        if hint.item_id is not None:
            item = self.db.get(Item, hint.item_id)
            if item is not None:
                return item
        if hint.barcode:
            return self.db.query(Item).filter(Item.barcode == hint.barcode.strip()).first()
        return None

    def ensure_item(self, hint: ItemHint) -> Tuple[Item, bool]:
        """Return ``(item, created)``.

        Looks the item up by id, then by barcode. When neither resolves, a
        placeholder record with ``AUTO-`` codes is added to the session
        (flushed, not committed) so the line keeps a valid item reference.
        """
        item = self.find_item(hint)
        if item is not None:
            return item, False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        item = Item(
            description=(hint.description or "").strip() or "Auto-generated item",
            barcode=hint.barcode or f"AUTO-{stamp}-{next(_placeholder_seq)}",
            supplier_code=hint.supplier_code or settings.placeholder_supplier_code,
            supplier_id=hint.supplier_id,
            category=settings.placeholder_item_category,
            unit_of_measure=settings.placeholder_unit_of_measure,
            cost_price=Decimal("0"),
            is_active=True,
        )
        self.db.add(item)
        self.db.flush()
        logger.warning(
            f"Created placeholder item {item.id} ({item.barcode}) for unresolved "
            f"item reference {hint.item_id!r}"
        )
        return item, True
