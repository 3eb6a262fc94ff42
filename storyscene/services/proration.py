"""
Mid-cycle upgrade proration.

Price and credit deltas are interpolated linearly over the part of the
current credit cycle that is still to run. The credit cycle is the rolling
window credits reset on, not the provider's invoice period.
"""

import math
from datetime import datetime, timedelta

from storyscene.models.subscription import BillingCycle, Plan, PlanName, ProrationQuote

SECONDS_PER_DAY = 86400


def cycle_position(
    now: datetime,
    cycle_start: datetime | None,
    cycle_end: datetime | None,
    cycle_days: int,
) -> tuple[int, int]:
    """
    Return ``(days_elapsed, days_remaining)`` in the current credit cycle.

    Partial days count as elapsed. Both values are clamped to
    ``[0, cycle_days]``. Without cycle dates the whole cycle remains.
    """
    if cycle_start is None and cycle_end is None:
        return 0, cycle_days
    if cycle_start is None:
        cycle_start = cycle_end - timedelta(days=cycle_days)

    elapsed_seconds = (now - cycle_start).total_seconds()
    days_elapsed = math.ceil(elapsed_seconds / SECONDS_PER_DAY) if elapsed_seconds > 0 else 0
    days_elapsed = min(max(days_elapsed, 0), cycle_days)
    return days_elapsed, cycle_days - days_elapsed


def quote_upgrade(
    *,
    current_plan: Plan | None,
    target_plan: Plan,
    billing_cycle: BillingCycle,
    now: datetime,
    cycle_start: datetime | None,
    cycle_end: datetime | None,
    cycle_days: int,
    free_plan_credits: int = 0,
) -> ProrationQuote:
    """
    Quote the charge and extra credits for switching plans mid-cycle.

    ``current_plan=None`` stands for the free tier: price 0 and
    ``free_plan_credits`` credits.
    """
    days_elapsed, days_remaining = cycle_position(now, cycle_start, cycle_end, cycle_days)
    remaining_fraction = days_remaining / cycle_days if cycle_days > 0 else 0.0

    current_price = current_plan.price_for(billing_cycle) if current_plan else 0.0
    current_credits = current_plan.credits_total if current_plan else free_plan_credits
    target_price = target_plan.price_for(billing_cycle)

    price_difference = round(target_price - current_price, 2)
    prorated_amount = round(price_difference * remaining_fraction, 2)
    credit_delta = target_plan.credits_total - current_credits
    additional_credits = max(0, math.floor(credit_delta * remaining_fraction))

    return ProrationQuote(
        current_plan=current_plan.name if current_plan else PlanName.FREE,
        target_plan=target_plan.name,
        billing_cycle=billing_cycle,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        price_difference=price_difference,
        prorated_amount=prorated_amount,
        additional_credits=additional_credits,
    )
