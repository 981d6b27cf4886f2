"""Billing data contracts shared between the engine and its collaborators.

Provider-shaped objects (subscriptions, schedules, phases, update payloads) are
pydantic models so Stripe payloads validate straight into them. Values the
engine derives for itself are frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, field_validator

from planshift.types import (
    PlanKey,
    ProductKey,
    ProrationBehavior,
    SubscriptionInterval,
    SubscriptionStatus,
    UsageType,
)

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class PriceTier(BaseModel):
    up_to: int | None = None
    flat_amount: int | None = None
    unit_amount: int | None = None
    flat_amount_decimal: str | None = None
    unit_amount_decimal: str | None = None


class CatalogProduct(BaseModel):
    stripe_product_id: str
    name: str = ""
    plan_key: PlanKey | None = None
    product_key: ProductKey | None = None
    usage_type: UsageType | None = None


class CatalogPrice(BaseModel):
    stripe_price_id: str
    stripe_product_id: str = ""
    interval: SubscriptionInterval | None = None
    usage_type: UsageType = UsageType.LICENSED
    tiers: list[PriceTier] = []
    product: CatalogProduct | None = None

    @property
    def cap(self) -> int | None:
        """Usage ceiling of the lowest tier, the ordering key between metered prices."""
        return self.tiers[0].up_to if self.tiers else None

    @property
    def is_metered(self) -> bool:
        return self.usage_type == UsageType.METERED and self.cap is not None

    @property
    def product_key(self) -> ProductKey | None:
        return self.product.product_key if self.product else None


class BillingPlan(BaseModel):
    plan_key: PlanKey
    licensed_products: list[CatalogProduct] = []
    metered_products: list[CatalogProduct] = []


class BillingThresholds(BaseModel):
    amount_gte: int | None = None
    reset_billing_cycle_anchor: bool | None = None


# ---------------------------------------------------------------------------
# Provider snapshots
# ---------------------------------------------------------------------------


def _price_ref_to_id(value: Any) -> Any:
    """Collapse an expanded price object to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class PhaseItem(BaseModel):
    price: str
    quantity: int | None = None

    @field_validator("price", mode="before")
    @classmethod
    def _normalize_price(cls, value: Any) -> Any:
        return _price_ref_to_id(value)


class SchedulePhase(BaseModel):
    start_date: int
    end_date: int | None = None
    items: list[PhaseItem] = []
    billing_thresholds: BillingThresholds | None = None
    proration_behavior: str | None = None


class PhaseWindow(BaseModel):
    start_date: int
    end_date: int | None = None


class SubscriptionSchedule(BaseModel):
    id: str
    status: str | None = None
    phases: list[SchedulePhase] = []
    current_phase: PhaseWindow | None = None


class SubscriptionItemSnapshot(BaseModel):
    id: str
    price_id: str
    product_id: str
    quantity: int | None = None
    interval: SubscriptionInterval | None = None


class SubscriptionSnapshot(BaseModel):
    id: str
    customer_id: str
    status: str
    items: list[SubscriptionItemSnapshot] = []
    current_period_start: int
    current_period_end: int
    trial_start: int | None = None
    trial_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    metadata: dict[str, str] = {}
    currency: str | None = None
    schedule: SubscriptionSchedule | str | None = None

    @property
    def expanded_schedule(self) -> SubscriptionSchedule | None:
        return self.schedule if isinstance(self.schedule, SubscriptionSchedule) else None

    @property
    def schedule_id(self) -> str | None:
        if isinstance(self.schedule, SubscriptionSchedule):
            return self.schedule.id
        return self.schedule

    @property
    def interval(self) -> SubscriptionInterval | None:
        for item in self.items:
            if item.interval is not None:
                return item.interval
        return None


# ---------------------------------------------------------------------------
# Mutation payloads
# ---------------------------------------------------------------------------


class PhaseUpdatePayload(BaseModel):
    start_date: int | Literal["now"] | None = None
    end_date: int | None = None
    items: list[PhaseItem] = []
    billing_thresholds: BillingThresholds | None = None
    proration_behavior: ProrationBehavior | None = None

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ScheduleUpdate(BaseModel):
    """The editable window of a schedule: the current phase and an optional next one."""

    current_phase: PhaseUpdatePayload
    next_phase: PhaseUpdatePayload | None = None

    def phases(self) -> list[PhaseUpdatePayload]:
        if self.next_phase is None:
            return [self.current_phase]
        return [self.current_phase, self.next_phase]


class SubscriptionItemUpdate(BaseModel):
    id: str
    price: str
    quantity: int | None = None


class SubscriptionUpdate(BaseModel):
    items: list[SubscriptionItemUpdate] = []
    billing_cycle_anchor: Literal["now", "unchanged"] | None = None
    proration_behavior: ProrationBehavior | None = None
    metadata: dict[str, str] | None = None
    billing_thresholds: BillingThresholds | None = None
    trial_end: Literal["now"] | None = None

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseDetails:
    """Decoded view of a phase or subscription: plan, both prices and seats."""

    plan: BillingPlan
    metered_price: CatalogPrice
    licensed_price: CatalogPrice
    quantity: int
    interval: SubscriptionInterval | None

    @property
    def plan_key(self) -> PlanKey:
        return self.plan.plan_key


@dataclass(frozen=True)
class PhaseSignature:
    """Identity of a phase for deduplication."""

    plan_key: PlanKey
    interval: SubscriptionInterval | None
    metered_price_id: str



@dataclass(frozen=True)
class TrialEndResult:
    """Outcome of ending a trial early. ``status`` is unset when nothing was charged."""

    has_payment_method: bool
    status: SubscriptionStatus | None = None
