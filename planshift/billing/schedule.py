"""Schedule loader: the live subscription with its current and next schedule phases."""

from __future__ import annotations

from dataclasses import dataclass

from planshift.billing.ports import ScheduleProviderBase
from planshift.exceptions import BillingExceptionCode, InvalidStateError, NotFoundError
from planshift.models.domain import SchedulePhase, SubscriptionSchedule, SubscriptionSnapshot


@dataclass(frozen=True)
class NoSchedule:
    subscription: SubscriptionSnapshot

    @property
    def schedule(self) -> None:
        return None

    @property
    def current_phase(self) -> None:
        return None

    @property
    def next_phase(self) -> None:
        return None


@dataclass(frozen=True)
class ScheduleNoNext:
    subscription: SubscriptionSnapshot
    schedule: SubscriptionSchedule
    current_phase: SchedulePhase

    @property
    def next_phase(self) -> None:
        return None


@dataclass(frozen=True)
class ScheduleWithNext:
    subscription: SubscriptionSnapshot
    schedule: SubscriptionSchedule
    current_phase: SchedulePhase
    next_phase: SchedulePhase


ScheduleState = NoSchedule | ScheduleNoNext | ScheduleWithNext


class ScheduleLoader:
    """Reads schedule state. Never creates a schedule."""

    def __init__(self, schedules: ScheduleProviderBase) -> None:
        self._schedules = schedules

    async def load(self, stripe_subscription_id: str) -> ScheduleState:
        subscription = await self._schedules.get_subscription_with_schedule(stripe_subscription_id)
        if subscription.schedule is None:
            return NoSchedule(subscription=subscription)

        schedule = subscription.expanded_schedule
        if schedule is None:
            raise InvalidStateError(
                f"Schedule of subscription {stripe_subscription_id} was not expanded",
                BillingExceptionCode.BILLING_SUBSCRIPTION_INVALID,
            )

        current, upcoming = self._schedules.get_current_and_next_phases(schedule)
        if current is None:
            raise NotFoundError(
                f"No editable phase found on schedule {schedule.id}",
                BillingExceptionCode.BILLING_SUBSCRIPTION_PHASE_NOT_FOUND,
            )
        if upcoming is None:
            return ScheduleNoNext(subscription=subscription, schedule=schedule, current_phase=current)
        return ScheduleWithNext(
            subscription=subscription,
            schedule=schedule,
            current_phase=current,
            next_phase=upcoming,
        )
