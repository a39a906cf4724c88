"""Proration for mid-period plan and cycle changes."""
from decimal import Decimal
from typing import Optional, Union

from billing_engine.core.clock import days_until
from billing_engine.core.errors import ProrationInputError
from billing_engine.models.billing import BillingCycle, ProrationResult, SubscriptionPlan

# Nominal period lengths; not the calendar length of the current cycle
CYCLE_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}

ZERO = Decimal("0")


def calculate_proration(
    current_plan: Optional[SubscriptionPlan],
    new_plan: Optional[SubscriptionPlan],
    billing_cycle: Union[BillingCycle, str],
    days_remaining: int,
    effective_date: Optional[int] = None,
) -> ProrationResult:
    """
    Compute the credit and charge owed for switching plans mid-period.

    Both plans are priced at ``billing_cycle``. The daily rate is the cycle
    price divided by 30 (monthly) or 365 (yearly). ``amount_due`` is the new
    plan's remaining value minus the current plan's, floored at zero; a
    negative difference surfaces as ``ProrationResult.downgrade_credit``.

    Pure: no I/O and no clock access.

    Raises:
        ProrationInputError: unknown plan, unknown cycle, or a days value
            that is negative or not an integer
    """
    if current_plan is None or new_plan is None:
        raise ProrationInputError("Invalid plan configuration: unknown plan")
    if isinstance(days_remaining, bool) or not isinstance(days_remaining, int):
        raise ProrationInputError(f"days_remaining must be an integer, got {days_remaining!r}")
    if days_remaining < 0:
        raise ProrationInputError(f"days_remaining must be >= 0, got {days_remaining}")
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError as e:
        raise ProrationInputError(f"Unknown billing cycle: {billing_cycle}") from e

    current_amount = current_plan.price_for(cycle)
    new_amount = new_plan.price_for(cycle)
    total_days = Decimal(CYCLE_DAYS[cycle])

    refund_equivalent = current_amount / total_days * days_remaining
    charge_equivalent = new_amount / total_days * days_remaining
    amount_due = max(ZERO, charge_equivalent - refund_equivalent)

    return ProrationResult(
        current_plan_amount=current_amount,
        new_plan_amount=new_amount,
        refund_equivalent=refund_equivalent,
        charge_equivalent=charge_equivalent,
        amount_due=amount_due,
        days_remaining=days_remaining,
        effective_date=effective_date,
    )


def days_remaining_in_period(next_billing_date: Optional[int], now_ms: int) -> int:
    """Whole days left before the next billing date; 0 when unset or already past."""
    if next_billing_date is None:
        return 0
    return days_until(next_billing_date, now_ms)
