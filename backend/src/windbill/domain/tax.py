"""
VAT and currency rounding.

All amounts are Decimal and rounded half-up to cents, the convention
used on German invoices.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .models import LineDraft, TaxType

CENT = Decimal("0.01")

TAX_RATES: dict[TaxType, Decimal] = {
    TaxType.STANDARD: Decimal("19"),
    TaxType.REDUCED: Decimal("7"),
    TaxType.EXEMPT: Decimal("0"),
}


def round_currency(value: Decimal) -> Decimal:
    """Round a monetary value half-up to two decimal places."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(base: Decimal, percent: Decimal) -> Decimal:
    """Return ``percent`` % of ``base`` rounded to cents."""
    return round_currency(base * percent / Decimal(100))


@dataclass(frozen=True)
class TaxAmounts:
    """Net, tax and gross for one line or a whole document."""
    net_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    gross_amount: Decimal


def calculate_tax_amounts(net_amount: Decimal, tax_type: TaxType) -> TaxAmounts:
    """
    Compute tax and gross for a net amount.

    Args:
        net_amount: Net value, rounded to cents before tax is applied
        tax_type: VAT category

    Returns:
        TaxAmounts with every field rounded to cents
    """
    net = round_currency(net_amount)
    rate = TAX_RATES[tax_type]
    tax = percentage_of(net, rate)
    return TaxAmounts(
        net_amount=net,
        tax_rate=rate,
        tax_amount=tax,
        gross_amount=net + tax,
    )


def document_totals(lines: list[LineDraft]) -> TaxAmounts:
    """
    Sum line-level amounts into document totals.

    Tax is computed per line so mixed-rate documents add up exactly.
    The returned tax_rate is the common rate, or 0 when rates are mixed.
    """
    per_line = [calculate_tax_amounts(line.net_amount, line.tax_type) for line in lines]
    rates = {amounts.tax_rate for amounts in per_line}
    return TaxAmounts(
        net_amount=sum((a.net_amount for a in per_line), Decimal("0.00")),
        tax_rate=rates.pop() if len(rates) == 1 else Decimal("0"),
        tax_amount=sum((a.tax_amount for a in per_line), Decimal("0.00")),
        gross_amount=sum((a.gross_amount for a in per_line), Decimal("0.00")),
    )
