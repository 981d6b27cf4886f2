"""Abstract collaborator interfaces consumed by the transition engine."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from planshift.exceptions import BillingExceptionCode, InvalidStateError
from planshift.models.domain import (
    BillingPlan,
    BillingThresholds,
    CatalogPrice,
    CatalogProduct,
    SchedulePhase,
    ScheduleUpdate,
    SubscriptionSchedule,
    SubscriptionSnapshot,
    SubscriptionUpdate,
)
from planshift.types import PlanKey, SubscriptionInterval


class PriceCatalogBase(ABC):
    """Read access to the synced product and price catalog."""

    @abstractmethod
    async def get_product_prices(
        self, interval: SubscriptionInterval, plan_key: PlanKey
    ) -> list[CatalogPrice]:
        """Return every active price of a plan for one billing interval."""

    @abstractmethod
    async def find_price(self, stripe_price_id: str) -> CatalogPrice:
        """Return a price by Stripe id. Raises NotFoundError if absent."""

    @abstractmethod
    async def get_plan_by_price_id(self, stripe_price_id: str) -> BillingPlan:
        """Return the plan owning a price. Raises NotFoundError if absent."""

    @abstractmethod
    async def get_plan_base_product(self, plan_key: PlanKey) -> CatalogProduct | None:
        """Return the BASE_PRODUCT licensed product of a plan, if any."""

    @abstractmethod
    async def get_billing_thresholds_by_meter_price_id(self, stripe_price_id: str) -> BillingThresholds:
        """Return the invoice thresholds to attach alongside a metered price."""

    async def get_metered_price(self, stripe_price_id: str) -> CatalogPrice:
        """Return a price, checking it is metered with a numeric first-tier cap."""
        price = await self.find_price(stripe_price_id)
        if not price.is_metered:
            raise InvalidStateError(
                f"Price {stripe_price_id} is not a metered price with a tier cap",
                BillingExceptionCode.BILLING_PRICE_INVALID,
            )
        return price


class SubscriptionProviderBase(ABC):
    """Mutations on the provider's subscription object."""

    @abstractmethod
    async def update_subscription(
        self, stripe_subscription_id: str, update: SubscriptionUpdate
    ) -> SubscriptionSnapshot:
        """Apply an update and return the resulting subscription."""

    @abstractmethod
    async def cancel_subscription(self, stripe_subscription_id: str) -> None:
        """Cancel the subscription immediately."""

    @abstractmethod
    async def collect_last_invoice(self, stripe_subscription_id: str) -> None:
        """Attempt payment of the subscription's latest invoice."""

    @abstractmethod
    async def has_payment_method(self, stripe_customer_id: str) -> bool:
        """Whether the customer has at least one payment method on file."""


class ScheduleProviderBase(ABC):
    """Access to the provider's subscription-schedule primitive."""

    @abstractmethod
    async def get_subscription_with_schedule(self, stripe_subscription_id: str) -> SubscriptionSnapshot:
        """Fetch a subscription with its schedule expanded (None when unscheduled)."""

    @abstractmethod
    async def find_or_create_subscription_schedule(
        self, subscription: SubscriptionSnapshot
    ) -> SubscriptionSchedule:
        """Return the subscription's schedule, creating one from it when missing."""

    @abstractmethod
    async def create_schedule_from_subscription(self, stripe_subscription_id: str) -> SubscriptionSchedule:
        """Create a schedule mirroring the subscription's current configuration."""

    @abstractmethod
    async def replace_editable_phases(self, schedule_id: str, update: ScheduleUpdate) -> SubscriptionSchedule:
        """Replace the current phase, and the next one when given, in a single write."""

    @abstractmethod
    async def release(self, schedule_id: str) -> None:
        """Detach the schedule, leaving the subscription on its current configuration."""

    def get_current_and_next_phases(
        self, schedule: SubscriptionSchedule, now: int | None = None
    ) -> tuple[SchedulePhase | None, SchedulePhase | None]:
        return current_and_next_phases(schedule, now)


def current_and_next_phases(
    schedule: SubscriptionSchedule, now: int | None = None
) -> tuple[SchedulePhase | None, SchedulePhase | None]:
    """Locate the phase covering now and the one immediately after it.

    The schedule's own ``current_phase`` window wins; otherwise the phase whose
    dates contain ``now`` is used.
    """
    phases = schedule.phases
    index: int | None = None
    if schedule.current_phase is not None:
        for i, phase in enumerate(phases):
            if phase.start_date == schedule.current_phase.start_date:
                index = i
                break
    if index is None:
        moment = int(time.time()) if now is None else now
        for i, phase in enumerate(phases):
            if phase.start_date <= moment and (phase.end_date is None or moment < phase.end_date):
                index = i
                break
    if index is None:
        return None, None
    next_phase = phases[index + 1] if index + 1 < len(phases) else None
    return phases[index], next_phase
