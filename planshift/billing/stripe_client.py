"""Stripe-backed subscription and schedule provider."""

from __future__ import annotations

from typing import Any

import stripe
import structlog

from planshift.billing.ports import ScheduleProviderBase, SubscriptionProviderBase
from planshift.models.domain import (
    ScheduleUpdate,
    SubscriptionItemSnapshot,
    SubscriptionSchedule,
    SubscriptionSnapshot,
    SubscriptionUpdate,
)

logger = structlog.get_logger(__name__)


def _ref_id(value: Any) -> str | None:
    """Id of a Stripe reference that may or may not be expanded."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def schedule_from_stripe(data: dict[str, Any]) -> SubscriptionSchedule:
    return SubscriptionSchedule.model_validate(
        {
            "id": data["id"],
            "status": data.get("status"),
            "phases": data.get("phases") or [],
            "current_phase": data.get("current_phase"),
        }
    )


def subscription_from_stripe(data: dict[str, Any]) -> SubscriptionSnapshot:
    """Convert a Stripe subscription payload into a snapshot.

    Recent API versions moved the billing period from the subscription onto
    its items; the first item's period is used when the top-level one is absent.
    """
    raw_items = (data.get("items") or {}).get("data") or []
    items = []
    for raw in raw_items:
        price = raw.get("price") or {}
        recurring = price.get("recurring") or {}
        items.append(
            SubscriptionItemSnapshot(
                id=raw["id"],
                price_id=price["id"],
                product_id=_ref_id(price.get("product")) or "",
                quantity=raw.get("quantity"),
                interval=recurring.get("interval"),
            )
        )

    first_item = raw_items[0] if raw_items else {}
    period_start = data.get("current_period_start") or first_item.get("current_period_start")
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    schedule = data.get("schedule")
    if isinstance(schedule, dict):
        schedule = schedule_from_stripe(schedule)

    return SubscriptionSnapshot(
        id=data["id"],
        customer_id=_ref_id(data.get("customer")) or "",
        status=data["status"],
        items=items,
        current_period_start=period_start,
        current_period_end=period_end,
        trial_start=data.get("trial_start"),
        trial_end=data.get("trial_end"),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        canceled_at=data.get("canceled_at"),
        metadata=data.get("metadata") or {},
        currency=data.get("currency"),
        schedule=schedule,
    )


class StripeBillingProvider(SubscriptionProviderBase, ScheduleProviderBase):
    """Async Stripe calls for subscriptions, schedules and invoices."""

    def __init__(self, api_key: str, api_version: str | None = None) -> None:
        self._options: dict[str, Any] = {"api_key": api_key}
        if api_version:
            self._options["stripe_version"] = api_version

    # Subscriptions

    async def update_subscription(
        self, stripe_subscription_id: str, update: SubscriptionUpdate
    ) -> SubscriptionSnapshot:
        subscription = await stripe.Subscription.modify_async(
            stripe_subscription_id, **update.to_params(), **self._options
        )
        logger.info("stripe_subscription_updated", stripe_subscription_id=stripe_subscription_id)
        return subscription_from_stripe(subscription.to_dict())

    async def cancel_subscription(self, stripe_subscription_id: str) -> None:
        await stripe.Subscription.cancel_async(stripe_subscription_id, **self._options)
        logger.info("stripe_subscription_canceled", stripe_subscription_id=stripe_subscription_id)

    async def collect_last_invoice(self, stripe_subscription_id: str) -> None:
        subscription = await stripe.Subscription.retrieve_async(
            stripe_subscription_id, expand=["latest_invoice"], **self._options
        )
        latest_invoice = subscription.to_dict().get("latest_invoice")
        if not isinstance(latest_invoice, dict) or latest_invoice.get("status") != "open":
            return
        await stripe.Invoice.pay_async(latest_invoice["id"], **self._options)
        logger.info(
            "stripe_invoice_paid",
            stripe_subscription_id=stripe_subscription_id,
            invoice_id=latest_invoice["id"],
        )

    async def has_payment_method(self, stripe_customer_id: str) -> bool:
        payment_methods = await stripe.Customer.list_payment_methods_async(
            stripe_customer_id, limit=1, **self._options
        )
        return bool(payment_methods.data)

    # Schedules

    async def get_subscription_with_schedule(self, stripe_subscription_id: str) -> SubscriptionSnapshot:
        subscription = await stripe.Subscription.retrieve_async(
            stripe_subscription_id, expand=["schedule"], **self._options
        )
        return subscription_from_stripe(subscription.to_dict())

    async def find_or_create_subscription_schedule(
        self, subscription: SubscriptionSnapshot
    ) -> SubscriptionSchedule:
        if subscription.expanded_schedule is not None:
            return subscription.expanded_schedule
        if subscription.schedule_id is not None:
            schedule = await stripe.SubscriptionSchedule.retrieve_async(subscription.schedule_id, **self._options)
            return schedule_from_stripe(schedule.to_dict())
        return await self.create_schedule_from_subscription(subscription.id)

    async def create_schedule_from_subscription(self, stripe_subscription_id: str) -> SubscriptionSchedule:
        schedule = await stripe.SubscriptionSchedule.create_async(
            from_subscription=stripe_subscription_id, **self._options
        )
        logger.info(
            "stripe_schedule_created",
            stripe_subscription_id=stripe_subscription_id,
            schedule_id=schedule.id,
        )
        return schedule_from_stripe(schedule.to_dict())

    async def replace_editable_phases(self, schedule_id: str, update: ScheduleUpdate) -> SubscriptionSchedule:
        schedule = await stripe.SubscriptionSchedule.modify_async(
            schedule_id,
            phases=[phase.to_params() for phase in update.phases()],
            end_behavior="release",
            **self._options,
        )
        logger.info("stripe_schedule_phases_replaced", schedule_id=schedule_id, phases=len(update.phases()))
        return schedule_from_stripe(schedule.to_dict())

    async def release(self, schedule_id: str) -> None:
        await stripe.SubscriptionSchedule.release_async(schedule_id, **self._options)
        logger.info("stripe_schedule_released", schedule_id=schedule_id)
