"""Money and tax calculation module"""

from .tax_calculator import (
    TaxCalculation,
    round_half_up,
    calculate_tax,
    calculate_deposit,
    calculate_balance_due,
    calculate_per_person_cost,
    is_government_contract,
)

__all__ = [
    "TaxCalculation",
    "round_half_up",
    "calculate_tax",
    "calculate_deposit",
    "calculate_balance_due",
    "calculate_per_person_cost",
    "is_government_contract",
]
