"""Read views over the subscription mirror, with item rows joined to their products."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.models.database import BillingProduct, BillingSubscription, BillingSubscriptionItem
from planshift.types import PlanKey, SubscriptionInterval, SubscriptionStatus, UsageType


@dataclass(frozen=True)
class MirrorItem:
    item: BillingSubscriptionItem
    product: BillingProduct | None

    @property
    def usage_type(self) -> UsageType | None:
        if self.product is None or self.product.usage_type is None:
            return None
        return UsageType(self.product.usage_type)

    @property
    def plan_key(self) -> PlanKey | None:
        if self.product is None or self.product.plan_key is None:
            return None
        return PlanKey(self.product.plan_key)

    @property
    def product_key(self) -> str | None:
        return self.product.product_key if self.product else None


@dataclass(frozen=True)
class MirrorSubscription:
    subscription: BillingSubscription
    items: list[MirrorItem] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.subscription.id

    @property
    def workspace_id(self) -> str:
        return self.subscription.workspace_id

    @property
    def stripe_subscription_id(self) -> str:
        return self.subscription.stripe_subscription_id

    @property
    def stripe_customer_id(self) -> str:
        return self.subscription.stripe_customer_id

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.subscription.status)

    @property
    def interval(self) -> SubscriptionInterval | None:
        if self.subscription.interval is None:
            return None
        return SubscriptionInterval(self.subscription.interval)

    @property
    def metadata(self) -> dict[str, str]:
        return json.loads(self.subscription.metadata_json or "{}")

    @property
    def plan_key(self) -> PlanKey:
        """Plan of the subscription, read from its first item's product."""
        for mirror_item in self.items:
            if mirror_item.plan_key is not None:
                return mirror_item.plan_key
        raise NotFoundError(
            f"No plan found on subscription {self.stripe_subscription_id}",
            BillingExceptionCode.BILLING_PLAN_NOT_FOUND,
        )

    def _item_by_usage_or_raise(self, usage_type: UsageType) -> BillingSubscriptionItem:
        for mirror_item in self.items:
            if mirror_item.usage_type == usage_type:
                return mirror_item.item
        raise NotFoundError(
            f"No {usage_type} item on subscription {self.stripe_subscription_id}",
            BillingExceptionCode.BILLING_SUBSCRIPTION_ITEM_NOT_FOUND,
        )

    def licensed_item_or_raise(self) -> BillingSubscriptionItem:
        return self._item_by_usage_or_raise(UsageType.LICENSED)

    def metered_item_or_raise(self) -> BillingSubscriptionItem:
        return self._item_by_usage_or_raise(UsageType.METERED)
