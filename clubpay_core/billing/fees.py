"""
Fee Calculator

Pure per-cycle fee and commission computation.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .base import CommissionMode, CommissionPolicy, FeeValidationError


CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeQuote:
    """Charge amounts for one billing cycle."""

    monthly_fee: Decimal
    amount_minor_units: int
    commission_minor_units: int


def calculate_monthly_fee(annual_fee: Decimal, active_months_count: int) -> Decimal:
    """
    Split an annual fee over the billable months.

    Rounded half-up to cents, with a floor of one cent so a positive
    annual fee never produces a zero charge.
    """
    if active_months_count < 1:
        raise FeeValidationError("At least one active month is required")
    if annual_fee is None or annual_fee <= 0:
        raise FeeValidationError(f"Annual fee must be positive, got {annual_fee}")

    monthly = (Decimal(annual_fee) / Decimal(active_months_count)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    return max(monthly, CENT)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-currency amount to integer minor units."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_commission(policy: CommissionPolicy, amount_minor_units: int) -> int:
    """Platform commission for one charge, clamped to [0, amount]."""
    if policy.mode == CommissionMode.FLAT:
        commission = policy.flat_minor_units
    else:
        commission = int(
            (policy.rate * amount_minor_units).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
    return min(max(commission, 0), amount_minor_units)


def application_fee_percent(commission_minor_units: int, amount_minor_units: int) -> Decimal:
    """Express a commission as a percentage of the charge (2 decimals)."""
    if amount_minor_units <= 0:
        return Decimal("0")
    return (Decimal(commission_minor_units) * 100 / Decimal(amount_minor_units)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


class FeeCalculator:
    """Computes per-cycle charges from a member's annual fee."""

    def quote(
        self,
        annual_fee: Optional[Decimal],
        active_months_count: int,
        policy: CommissionPolicy,
    ) -> FeeQuote:
        monthly_fee = calculate_monthly_fee(annual_fee, active_months_count)
        amount = to_minor_units(monthly_fee)
        return FeeQuote(
            monthly_fee=monthly_fee,
            amount_minor_units=amount,
            commission_minor_units=calculate_commission(policy, amount),
        )
