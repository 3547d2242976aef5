"""GST per line item and the CGST/SGST vs IGST split by shipping state.

Prices are exclusive of GST. Every line is rounded half-up to paise on its
own, so order totals may drift from a single whole-order computation by up to
0.01 per line. That drift is accepted: the invoice shows per-line amounts and
they must add up to what is printed.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_GST_RATE = Decimal("0.05")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(value))


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def from_paise(paise) -> Decimal | None:
    """Gateway amounts are integer paise; anything non-numeric is None."""
    if isinstance(paise, bool) or not isinstance(paise, (int, float, Decimal)):
        return None
    return round2(to_decimal(paise) / 100)


@dataclass(frozen=True)
class LineInput:
    price: Decimal
    quantity: int
    gst_rate: Decimal


@dataclass(frozen=True)
class TaxedLine:
    price: Decimal
    quantity: int
    gst_rate: Decimal
    taxable: Decimal
    gst_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    cgst: Decimal = ZERO
    sgst: Decimal = ZERO
    igst: Decimal = ZERO

    @property
    def is_intra_state(self) -> bool:
        return self.cgst > 0 or self.sgst > 0


@dataclass(frozen=True)
class OrderTax:
    lines: list[TaxedLine]
    subtotal: Decimal
    gst_amount: Decimal
    amount: Decimal
    breakdown: TaxBreakdown

    @property
    def tolerance(self) -> Decimal:
        return rounding_tolerance(len(self.lines))


def rounding_tolerance(line_count: int) -> Decimal:
    return CENT * max(line_count, 1)


def resolve_gst_rate(rate, default=DEFAULT_GST_RATE) -> Decimal:
    """Catalog rate as a fraction; missing or out-of-range values fall back to the default."""
    if rate is None:
        return to_decimal(default)
    r = to_decimal(rate)
    if r < 0 or r > 1:
        return to_decimal(default)
    return r


def tax_line(price, quantity: int, gst_rate) -> TaxedLine:
    p = to_decimal(price)
    rate = to_decimal(gst_rate)
    base = p * quantity
    return TaxedLine(
        price=p,
        quantity=quantity,
        gst_rate=rate,
        taxable=round2(base),
        gst_amount=round2(base * rate),
        line_total=round2(base * (1 + rate)),
    )


def is_intra_state(shipping_state: str | None, seller_state: str | None) -> bool:
    if not shipping_state or not seller_state:
        return False
    return shipping_state.strip().lower() == seller_state.strip().lower()


def split_gst(subtotal: Decimal, gst_total: Decimal, shipping_state: str | None, seller_state: str | None) -> TaxBreakdown:
    """CGST+SGST halves for intra-state supply, IGST otherwise."""
    if subtotal == 0:
        return TaxBreakdown()
    blended_rate = gst_total / subtotal
    tax = round2(subtotal * blended_rate)
    if is_intra_state(shipping_state, seller_state):
        half = round2(tax / 2)
        return TaxBreakdown(cgst=half, sgst=half, igst=ZERO)
    return TaxBreakdown(cgst=ZERO, sgst=ZERO, igst=tax)


def compute_order_tax(lines: Iterable[LineInput], shipping_state: str | None, seller_state: str | None) -> OrderTax:
    taxed = [tax_line(line.price, line.quantity, line.gst_rate) for line in lines]
    subtotal = sum((t.taxable for t in taxed), ZERO)
    gst_amount = sum((t.gst_amount for t in taxed), ZERO)
    amount = sum((t.line_total for t in taxed), ZERO)
    return OrderTax(
        lines=taxed,
        subtotal=subtotal,
        gst_amount=gst_amount,
        amount=amount,
        breakdown=split_gst(subtotal, gst_amount, shipping_state, seller_state),
    )
