"""Line Computation Engine: discount -> net -> VAT -> total arithmetic.

Pure functions over Decimal. Every monetary value is rounded to 2 decimal
places as soon as it is produced, so totals aggregated over many lines do
not drift.
"""

from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from functools import reduce
from typing import Iterable, Optional, Union
import logging

from docflow.core.errors import ValidationError

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
MILL = Decimal("0.001")
ZERO = Decimal("0")
MAX_DISCOUNT_RATIO = Decimal("0.999")
MIN_NET = CENT


def to_decimal(value: Optional[Number]) -> Decimal:
    """Coerce a numeric value (or None) to Decimal, None -> 0."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def round_unit_cost(value: Decimal) -> Decimal:
    """Unit costs keep 3 decimal places (fils-denominated currencies)."""
    return value.quantize(MILL, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ComputedLine:
    """Financial amounts of one document line."""

    gross: Decimal
    discount: Decimal
    net: Decimal
    vat: Decimal
    total: Decimal
    discount_capped: bool = False


def compute(
    quantity: Number,
    unit_price: Number,
    discount_percent: Optional[Number] = None,
    discount_amount_override: Optional[Number] = None,
    vat_percent: Optional[Number] = None,
    vat_amount_override: Optional[Number] = None,
) -> ComputedLine:
    """Compute gross, discount, net, VAT and total for one line.

    An override amount greater than zero wins over the corresponding
    percentage. The discount is capped just below the gross amount and the
    net amount never falls under 0.01.

    Raises:
        ValueError: on negative quantity, price or percentages.
    """
    qty = to_decimal(quantity)
    price = to_decimal(unit_price)
    disc_pct = to_decimal(discount_percent)
    disc_override = to_decimal(discount_amount_override)
    vat_pct = to_decimal(vat_percent)
    vat_override = to_decimal(vat_amount_override)

    if qty < 0 or price < 0:
        raise ValueError(f"Quantity and unit price must be non-negative (got {qty} x {price})")
    if disc_pct < 0 or vat_pct < 0:
        raise ValueError(f"Percentages must be non-negative (discount {disc_pct}, vat {vat_pct})")

    gross = round_money(qty * price)

    if disc_override > 0:
        discount = round_money(disc_override)
    else:
        discount = round_money(gross * disc_pct / 100)

    max_discount = (gross * MAX_DISCOUNT_RATIO).quantize(CENT, rounding=ROUND_DOWN)
    capped = discount > max_discount
    if capped:
        logger.warning(f"Discount {discount} exceeds 99.9% of gross {gross}, capping at {max_discount}")
        discount = max_discount

    net = max(MIN_NET, gross - discount)

    if vat_override > 0:
        vat = round_money(vat_override)
    else:
        vat = round_money(net * vat_pct / 100)

    return ComputedLine(
        gross=gross,
        discount=discount,
        net=net,
        vat=vat,
        total=net + vat,
        discount_capped=capped,
    )


@dataclass(frozen=True)
class DocumentTotals:
    """Header-level totals folded from computed lines."""

    gross_total: Decimal = ZERO
    discount_total: Decimal = ZERO
    subtotal: Decimal = ZERO
    tax_total: Decimal = ZERO
    grand_total: Decimal = ZERO
    line_count: int = 0
    recovered: bool = False

    def add(self, line: ComputedLine) -> "DocumentTotals":
        return DocumentTotals(
            gross_total=self.gross_total + line.gross,
            discount_total=self.discount_total + line.discount,
            subtotal=self.subtotal + line.net,
            tax_total=self.tax_total + line.vat,
            grand_total=self.grand_total + line.total,
            line_count=self.line_count + 1,
        )

    @property
    def effective_tax_rate(self) -> Decimal:
        """Tax as a percentage of subtotal, for the header tax_rate column."""
        if self.subtotal <= 0:
            return ZERO
        return round_money(self.tax_total / self.subtotal * 100)


def fold_totals(lines: Iterable[ComputedLine]) -> DocumentTotals:
    return reduce(DocumentTotals.add, lines, DocumentTotals())


def reconcile_header_totals(lines: Iterable[ComputedLine]) -> DocumentTotals:
    """Fold lines into header totals, refusing a zero-value document.

    If the folded subtotal is not positive the subtotal is recomputed from
    line totals net of VAT before giving up.

    Raises:
        ValidationError: no lines, or no positive subtotal after recovery.
    """
    lines = list(lines)
    if not lines:
        raise ValidationError("No processable lines: nothing to derive", field="lines")

    totals = fold_totals(lines)
    if totals.subtotal > 0:
        return totals

    recovered = sum((line.total - line.vat for line in lines), ZERO)
    if recovered > 0:
        logger.warning(
            f"Header subtotal {totals.subtotal} not positive, recovered {recovered} from line totals"
        )
        return replace(
            totals,
            subtotal=recovered,
            grand_total=recovered + totals.tax_total,
            recovered=True,
        )

    raise ValidationError(
        f"Computed subtotal {totals.subtotal} is not positive after recovery", field="subtotal"
    )
