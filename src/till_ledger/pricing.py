"""Money and VAT arithmetic for the till ledger.

Everything in this module is pure: functions take prices, quantities, VAT
classifications, and a flat discount, and hand back :class:`~decimal.Decimal`
results without touching the store. Rounding is deliberately absent from the
calculations; only :func:`to_display_amount` quantizes values, and it is meant
to be called when numbers leave the system (receipts, CLI output).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Sequence, Tuple

from .constants import VatType


ZERO = Decimal("0")
HUNDRED = Decimal("100")
DISPLAY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class PricedLine:
    """Calculator input describing one cart line."""

    unit_price: Decimal
    quantity: int
    vat_type: VatType


@dataclass(frozen=True)
class LineBreakdown:
    """Per-line figures used when rendering a receipt."""

    line_total: Decimal
    line_discount: Decimal
    discounted_total: Decimal
    vat_amount: Decimal
    net_amount: Decimal
    vat_type: VatType


@dataclass(frozen=True)
class SaleTotals:
    """Aggregate result of pricing a cart."""

    subtotal: Decimal
    discount_applied: Decimal
    vat_amount: Decimal
    net_amount: Decimal
    lines: Tuple[LineBreakdown, ...]


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Return ``unit_price * quantity`` without rounding."""

    return Decimal(unit_price) * quantity


def allocate_discount(line_totals: Sequence[Decimal], discount: Decimal) -> List[Decimal]:
    """Split a flat discount across lines in proportion to their totals.

    Each line receives ``discount * line_total / subtotal``. When the subtotal
    is zero every line receives zero so the division never happens.

    Args:
        line_totals (Sequence[Decimal]): Pre-discount totals, one per line.
        discount (Decimal): Flat discount in currency units.

    Returns:
        list[Decimal]: Discount share for each line, in input order.
    """

    subtotal = sum(line_totals, ZERO)
    if subtotal == ZERO:
        return [ZERO for _ in line_totals]
    return [Decimal(discount) * total / subtotal for total in line_totals]


def line_vat(amount: Decimal, vat_type: VatType, vat_rate: Decimal) -> Decimal:
    """Return the VAT contained in, or added to, a discounted line amount.

    ``Included`` prices already carry tax, so the VAT is backed out with
    ``amount * rate / (100 + rate)``. ``Excluded`` prices get
    ``amount * rate / 100`` on top. ``None`` lines are exempt.
    """

    rate = Decimal(vat_rate)
    if vat_type is VatType.INCLUDED:
        return amount * rate / (HUNDRED + rate)
    if vat_type is VatType.EXCLUDED:
        return amount * rate / HUNDRED
    if vat_type is VatType.NONE:
        return ZERO
    raise ValueError(f"Unsupported VAT classification: {vat_type!r}")


def calculate_totals(lines: Iterable[PricedLine], discount: Decimal, vat_rate: Decimal) -> SaleTotals:
    """Price a cart under a single flat VAT rate.

    The discount is prorated across lines before tax is evaluated. VAT on
    ``Included`` lines is reported but not charged again; VAT on ``Excluded``
    lines is added to the amount due, so::

        net = sum(line_total - line_discount) + sum(vat of Excluded lines)

    which equals ``subtotal - discount + excluded VAT``.

    Args:
        lines (Iterable[PricedLine]): Cart lines to price.
        discount (Decimal): Flat discount for the whole cart.
        vat_rate (Decimal): VAT percentage, for example ``Decimal("7")``.

    Returns:
        SaleTotals: Cart level totals plus a breakdown per line.
    """

    priced = list(lines)
    totals = [line_total(line.unit_price, line.quantity) for line in priced]
    discounts = allocate_discount(totals, discount)

    breakdowns: List[LineBreakdown] = []
    for line, total, share in zip(priced, totals, discounts):
        discounted = total - share
        vat = line_vat(discounted, line.vat_type, vat_rate)
        net = discounted + vat if line.vat_type is VatType.EXCLUDED else discounted
        breakdowns.append(
            LineBreakdown(
                line_total=total,
                line_discount=share,
                discounted_total=discounted,
                vat_amount=vat,
                net_amount=net,
                vat_type=line.vat_type,
            )
        )

    return SaleTotals(
        subtotal=sum(totals, ZERO),
        discount_applied=Decimal(discount),
        vat_amount=sum((item.vat_amount for item in breakdowns), ZERO),
        net_amount=sum((item.net_amount for item in breakdowns), ZERO),
        lines=tuple(breakdowns),
    )


def to_display_amount(amount: Decimal) -> Decimal:
    """Clamp negatives to zero and round half-up to two decimal places."""

    value = max(Decimal(amount), ZERO)
    return value.quantize(DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)


__all__ = [
    "PricedLine",
    "LineBreakdown",
    "SaleTotals",
    "line_total",
    "allocate_discount",
    "line_vat",
    "calculate_totals",
    "to_display_amount",
]
