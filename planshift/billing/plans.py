"""Plan and interval switching rules."""

from __future__ import annotations

from planshift.exceptions import BillingExceptionCode, NotSwitchableError
from planshift.types import PlanKey, SubscriptionInterval

MONTHS_PER_YEAR = 12

_OPPOSITE_PLAN: dict[PlanKey, PlanKey] = {
    PlanKey.PRO: PlanKey.ENTERPRISE,
    PlanKey.ENTERPRISE: PlanKey.PRO,
}

_OPPOSITE_INTERVAL: dict[SubscriptionInterval, SubscriptionInterval] = {
    SubscriptionInterval.MONTH: SubscriptionInterval.YEAR,
    SubscriptionInterval.YEAR: SubscriptionInterval.MONTH,
}


def opposite_plan(plan_key: str) -> PlanKey:
    """Return the plan a workspace switches to from ``plan_key``."""
    try:
        return _OPPOSITE_PLAN[PlanKey(plan_key)]
    except (KeyError, ValueError) as e:
        raise NotSwitchableError(
            f"Plan {plan_key!r} has no switch target",
            BillingExceptionCode.BILLING_SUBSCRIPTION_PLAN_NOT_SWITCHABLE,
        ) from e


def opposite_interval(interval: str) -> SubscriptionInterval:
    """Return the billing interval a workspace switches to from ``interval``."""
    try:
        return _OPPOSITE_INTERVAL[SubscriptionInterval(interval)]
    except (KeyError, ValueError) as e:
        raise NotSwitchableError(
            f"Interval {interval!r} has no switch target",
            BillingExceptionCode.BILLING_SUBSCRIPTION_INTERVAL_NOT_SWITCHABLE,
        ) from e


def scale_cap(cap: float, source: SubscriptionInterval, target: SubscriptionInterval) -> float:
    """Express a metered usage cap in the unit of another billing interval."""
    if source == target:
        return cap
    if source == SubscriptionInterval.MONTH and target == SubscriptionInterval.YEAR:
        return cap * MONTHS_PER_YEAR
    return cap / MONTHS_PER_YEAR
