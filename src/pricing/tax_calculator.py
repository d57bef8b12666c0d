"""Money and tax calculation on integer minor units

Pure functions: no I/O, no exceptions for degenerate numeric input.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from src.config import settings

Number = Union[int, Decimal]

ZERO_RATE = Decimal("0")
GOVERNMENT_COMPLIANCE_LEVEL = "government"


@dataclass(frozen=True)
class TaxCalculation:
    """Result of a tax calculation"""
    subtotal: int
    tax_amount: int
    total_amount: int
    tax_rate: Decimal
    is_exempt: bool


def round_half_up(value: Number) -> int:
    """Round a Decimal amount of cents to a whole cent, halves away from zero"""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def tax_rate_for(is_exempt: bool) -> Decimal:
    return ZERO_RATE if is_exempt else settings.TAX_RATE


def calculate_tax(subtotal: Optional[int], is_exempt: bool = False) -> TaxCalculation:
    """
    Calculate tax and total for a subtotal

    Args:
        subtotal: Subtotal in cents (None treated as 0)
        is_exempt: Tax exemption flag (government contracts)

    Returns:
        TaxCalculation with tax_amount = round_half_up(subtotal * rate)
    """
    subtotal = int(subtotal or 0)
    rate = tax_rate_for(is_exempt)
    tax_amount = round_half_up(Decimal(subtotal) * rate)
    return TaxCalculation(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=subtotal + tax_amount,
        tax_rate=rate,
        is_exempt=is_exempt,
    )


def calculate_deposit(total: Optional[int]) -> int:
    """Deposit required up front (DEPOSIT_PERCENTAGE of the total)"""
    return round_half_up(Decimal(int(total or 0)) * settings.DEPOSIT_PERCENTAGE)


def calculate_balance_due(total: Optional[int], deposit_paid: Optional[int] = None) -> int:
    """Balance remaining after the deposit (actual deposit paid when known)"""
    total = int(total or 0)
    if deposit_paid is None:
        deposit_paid = calculate_deposit(total)
    return total - deposit_paid


def calculate_per_person_cost(total: Optional[int], guest_count: Optional[int]) -> int:
    """Per-guest cost; zero for a missing or non-positive guest count"""
    if not guest_count or guest_count <= 0:
        return 0
    return round_half_up(Decimal(int(total or 0)) / Decimal(guest_count))


def is_government_contract(compliance_level: Optional[str], requires_po_number: Optional[bool]) -> bool:
    """Tax exemption flag derived from the quote record"""
    return compliance_level == GOVERNMENT_COMPLIANCE_LEVEL or bool(requires_po_number)
