"""Push provider subscription state into the local billing mirror."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import structlog

from planshift.billing.ports import ScheduleProviderBase
from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.models.database import BillingCustomer, BillingSubscription, BillingSubscriptionItem
from planshift.models.domain import SubscriptionSnapshot
from planshift.models.mirror import MirrorSubscription
from planshift.storage.repositories.billing import (
    BillingCustomerRepository,
    BillingSubscriptionItemRepository,
    BillingSubscriptionRepository,
)

logger = structlog.get_logger(__name__)


def _from_epoch(value: int | None) -> datetime | None:
    """Unix seconds to naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)


def customer_row_from_snapshot(workspace_id: str, snapshot: SubscriptionSnapshot) -> BillingCustomer:
    return BillingCustomer(workspace_id=workspace_id, stripe_customer_id=snapshot.customer_id)


def subscription_row_from_snapshot(workspace_id: str, snapshot: SubscriptionSnapshot) -> BillingSubscription:
    schedule = snapshot.expanded_schedule
    phases = [p.model_dump(mode="json") for p in schedule.phases] if schedule else []
    interval = snapshot.interval
    return BillingSubscription(
        workspace_id=workspace_id,
        stripe_customer_id=snapshot.customer_id,
        stripe_subscription_id=snapshot.id,
        status=snapshot.status,
        interval=interval.value if interval else None,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        current_period_start=_from_epoch(snapshot.current_period_start),
        current_period_end=_from_epoch(snapshot.current_period_end),
        trial_start=_from_epoch(snapshot.trial_start),
        trial_end=_from_epoch(snapshot.trial_end),
        metadata_json=json.dumps(snapshot.metadata),
        phases_json=json.dumps(phases),
    )


def item_rows_from_snapshot(
    billing_subscription_id: str, snapshot: SubscriptionSnapshot
) -> list[BillingSubscriptionItem]:
    return [
        BillingSubscriptionItem(
            billing_subscription_id=billing_subscription_id,
            stripe_subscription_id=snapshot.id,
            stripe_subscription_item_id=item.id,
            stripe_product_id=item.product_id,
            stripe_price_id=item.price_id,
            quantity=item.quantity,
        )
        for item in snapshot.items
    ]


class SubscriptionSync:
    """Upserts customer, subscription and item mirror rows from a provider snapshot."""

    def __init__(
        self,
        customers: BillingCustomerRepository,
        subscriptions: BillingSubscriptionRepository,
        items: BillingSubscriptionItemRepository,
        schedules: ScheduleProviderBase,
    ) -> None:
        self._customers = customers
        self._subscriptions = subscriptions
        self._items = items
        self._schedules = schedules

    async def sync(self, workspace_id: str, snapshot: SubscriptionSnapshot) -> MirrorSubscription:
        await self._customers.upsert(customer_row_from_snapshot(workspace_id, snapshot))

        expanded = snapshot
        if isinstance(snapshot.schedule, str):
            expanded = await self._schedules.get_subscription_with_schedule(snapshot.id)
        await self._subscriptions.upsert(subscription_row_from_snapshot(workspace_id, expanded))

        mirrored = await self._subscriptions.find_by_workspace(workspace_id)
        stored = next((m for m in mirrored if m.stripe_subscription_id == snapshot.id), None)
        if stored is None:
            raise NotFoundError(
                f"Billing subscription {snapshot.id} not found after upsert",
                BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND,
            )

        item_rows = item_rows_from_snapshot(stored.id, snapshot)
        metered = next((row for row in item_rows if row.quantity is None), None)
        if metered is None:
            raise NotFoundError(
                f"No metered item on subscription {snapshot.id}",
                BillingExceptionCode.BILLING_SUBSCRIPTION_ITEM_NOT_FOUND,
            )

        # The provider may replace the metered item instead of updating it in place
        existing = await self._items.find_one(stored.id, metered.stripe_product_id)
        if existing is None or existing.stripe_subscription_item_id != metered.stripe_subscription_item_id:
            await self._items.delete(stored.id, metered.stripe_product_id)

        await self._items.upsert_many(item_rows)
        logger.info("subscription_synced", stripe_subscription_id=snapshot.id, workspace_id=workspace_id)
        return await self._subscriptions.get_by_stripe_id_or_raise(snapshot.id)
