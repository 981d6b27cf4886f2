"""Unit tests for the Stripe provider and payload conversion."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from factories import LICENSE_PRICE_PRO_MONTH_ID, METER_PRICE_PRO_MONTH_ID, PERIOD_END, PERIOD_START

from planshift.billing.stripe_client import StripeBillingProvider, schedule_from_stripe, subscription_from_stripe
from planshift.models.domain import (
    PhaseItem,
    PhaseUpdatePayload,
    ScheduleUpdate,
    SubscriptionItemUpdate,
    SubscriptionSchedule,
    SubscriptionUpdate,
)
from planshift.types import ProrationBehavior, SubscriptionInterval


def _stripe_object(data: dict[str, Any]) -> MagicMock:
    obj = MagicMock()
    obj.id = data["id"]
    obj.to_dict.return_value = data
    return obj


def _schedule_payload() -> dict[str, Any]:
    return {
        "id": "sub_sched_1",
        "object": "subscription_schedule",
        "status": "active",
        "current_phase": {"start_date": PERIOD_START, "end_date": PERIOD_END},
        "phases": [
            {
                "start_date": PERIOD_START,
                "end_date": PERIOD_END,
                "items": [
                    {"price": LICENSE_PRICE_PRO_MONTH_ID, "quantity": 2, "metadata": {}},
                    {"price": {"id": METER_PRICE_PRO_MONTH_ID, "object": "price"}, "metadata": {}},
                ],
                "billing_thresholds": None,
                "proration_behavior": "create_prorations",
            }
        ],
    }


def _subscription_payload(schedule: Any = None, legacy_period: bool = True) -> dict[str, Any]:
    period = {"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}
    items = [
        {
            "id": "si_licensed",
            "quantity": 2,
            "price": {"id": LICENSE_PRICE_PRO_MONTH_ID, "product": "prod_pro_base", "recurring": {"interval": "month"}},
            **({} if legacy_period else period),
        },
        {
            "id": "si_metered",
            "price": {
                "id": METER_PRICE_PRO_MONTH_ID,
                "product": {"id": "prod_pro_meter"},
                "recurring": {"interval": "month", "usage_type": "metered"},
            },
            **({} if legacy_period else period),
        },
    ]
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": "active",
        "items": {"object": "list", "data": items},
        "metadata": {"plan": "PRO"},
        "currency": "usd",
        "cancel_at_period_end": False,
        "schedule": schedule,
        **(period if legacy_period else {}),
    }


@pytest.mark.unit
class TestConversion:
    def test_subscription_from_stripe(self) -> None:
        snapshot = subscription_from_stripe(_subscription_payload())
        assert snapshot.id == "sub_1"
        assert snapshot.customer_id == "cus_1"
        assert snapshot.current_period_end == PERIOD_END
        assert [i.product_id for i in snapshot.items] == ["prod_pro_base", "prod_pro_meter"]
        assert snapshot.items[1].quantity is None
        assert snapshot.interval == SubscriptionInterval.MONTH
        assert snapshot.schedule is None

    def test_period_falls_back_to_first_item(self) -> None:
        snapshot = subscription_from_stripe(_subscription_payload(legacy_period=False))
        assert snapshot.current_period_start == PERIOD_START
        assert snapshot.current_period_end == PERIOD_END

    def test_expanded_schedule_is_parsed(self) -> None:
        snapshot = subscription_from_stripe(_subscription_payload(schedule=_schedule_payload()))
        assert isinstance(snapshot.schedule, SubscriptionSchedule)
        assert snapshot.schedule_id == "sub_sched_1"

    def test_schedule_reference_stays_an_id(self) -> None:
        snapshot = subscription_from_stripe(_subscription_payload(schedule="sub_sched_1"))
        assert snapshot.schedule == "sub_sched_1"
        assert snapshot.expanded_schedule is None

    def test_schedule_from_stripe_normalizes_prices(self) -> None:
        schedule = schedule_from_stripe(_schedule_payload())
        assert [i.price for i in schedule.phases[0].items] == [LICENSE_PRICE_PRO_MONTH_ID, METER_PRICE_PRO_MONTH_ID]
        assert schedule.current_phase is not None
        assert schedule.current_phase.start_date == PERIOD_START


@pytest.mark.unit
class TestStripeBillingProvider:
    @pytest.mark.asyncio
    async def test_update_subscription_passes_params_and_options(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1", api_version="2024-06-20")
        update = SubscriptionUpdate(
            items=[SubscriptionItemUpdate(id="si_metered", price=METER_PRICE_PRO_MONTH_ID)],
            proration_behavior=ProrationBehavior.NONE,
        )
        with patch("stripe.Subscription.modify_async", new_callable=AsyncMock) as modify:
            modify.return_value = _stripe_object(_subscription_payload())
            snapshot = await provider.update_subscription("sub_1", update)

        modify.assert_awaited_once_with(
            "sub_1",
            items=[{"id": "si_metered", "price": METER_PRICE_PRO_MONTH_ID}],
            proration_behavior="none",
            api_key="sk_test_1",
            stripe_version="2024-06-20",
        )
        assert snapshot.id == "sub_1"

    @pytest.mark.asyncio
    async def test_get_subscription_with_schedule_expands(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.Subscription.retrieve_async", new_callable=AsyncMock) as retrieve:
            retrieve.return_value = _stripe_object(_subscription_payload(schedule=_schedule_payload()))
            snapshot = await provider.get_subscription_with_schedule("sub_1")

        retrieve.assert_awaited_once_with("sub_1", expand=["schedule"], api_key="sk_test_1")
        assert snapshot.expanded_schedule is not None

    @pytest.mark.asyncio
    async def test_find_or_create_reuses_expanded_schedule(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        snapshot = subscription_from_stripe(_subscription_payload(schedule=_schedule_payload()))
        with patch("stripe.SubscriptionSchedule.create_async", new_callable=AsyncMock) as create:
            schedule = await provider.find_or_create_subscription_schedule(snapshot)
        create.assert_not_awaited()
        assert schedule.id == "sub_sched_1"

    @pytest.mark.asyncio
    async def test_find_or_create_retrieves_referenced_schedule(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        snapshot = subscription_from_stripe(_subscription_payload(schedule="sub_sched_1"))
        with patch("stripe.SubscriptionSchedule.retrieve_async", new_callable=AsyncMock) as retrieve:
            retrieve.return_value = _stripe_object(_schedule_payload())
            schedule = await provider.find_or_create_subscription_schedule(snapshot)
        retrieve.assert_awaited_once_with("sub_sched_1", api_key="sk_test_1")
        assert len(schedule.phases) == 1

    @pytest.mark.asyncio
    async def test_find_or_create_creates_from_subscription(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        snapshot = subscription_from_stripe(_subscription_payload())
        with patch("stripe.SubscriptionSchedule.create_async", new_callable=AsyncMock) as create:
            create.return_value = _stripe_object(_schedule_payload())
            schedule = await provider.find_or_create_subscription_schedule(snapshot)
        create.assert_awaited_once_with(from_subscription="sub_1", api_key="sk_test_1")
        assert schedule.id == "sub_sched_1"

    @pytest.mark.asyncio
    async def test_replace_editable_phases_releases_at_end(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        current = PhaseUpdatePayload(
            start_date=PERIOD_START,
            end_date=PERIOD_END,
            items=[PhaseItem(price=LICENSE_PRICE_PRO_MONTH_ID, quantity=2), PhaseItem(price=METER_PRICE_PRO_MONTH_ID)],
            proration_behavior=ProrationBehavior.NONE,
        )
        next_phase = current.model_copy(update={"start_date": PERIOD_END, "end_date": None})
        with patch("stripe.SubscriptionSchedule.modify_async", new_callable=AsyncMock) as modify:
            modify.return_value = _stripe_object(_schedule_payload())
            await provider.replace_editable_phases(
                "sub_sched_1", ScheduleUpdate(current_phase=current, next_phase=next_phase)
            )

        kwargs = modify.await_args.kwargs
        assert kwargs["end_behavior"] == "release"
        assert [p["start_date"] for p in kwargs["phases"]] == [PERIOD_START, PERIOD_END]
        assert "end_date" not in kwargs["phases"][1]

    @pytest.mark.asyncio
    async def test_release(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.SubscriptionSchedule.release_async", new_callable=AsyncMock) as release:
            await provider.release("sub_sched_1")
        release.assert_awaited_once_with("sub_sched_1", api_key="sk_test_1")

    @pytest.mark.asyncio
    async def test_collect_last_invoice_pays_open_invoice(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        payload = {**_subscription_payload(), "latest_invoice": {"id": "in_1", "status": "open"}}
        with (
            patch("stripe.Subscription.retrieve_async", new_callable=AsyncMock) as retrieve,
            patch("stripe.Invoice.pay_async", new_callable=AsyncMock) as pay,
        ):
            retrieve.return_value = _stripe_object(payload)
            await provider.collect_last_invoice("sub_1")
        pay.assert_awaited_once_with("in_1", api_key="sk_test_1")

    @pytest.mark.asyncio
    async def test_collect_last_invoice_skips_paid_invoice(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        payload = {**_subscription_payload(), "latest_invoice": {"id": "in_1", "status": "paid"}}
        with (
            patch("stripe.Subscription.retrieve_async", new_callable=AsyncMock) as retrieve,
            patch("stripe.Invoice.pay_async", new_callable=AsyncMock) as pay,
        ):
            retrieve.return_value = _stripe_object(payload)
            await provider.collect_last_invoice("sub_1")
        pay.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_subscription(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.Subscription.cancel_async", new_callable=AsyncMock) as cancel:
            await provider.cancel_subscription("sub_1")
        cancel.assert_awaited_once_with("sub_1", api_key="sk_test_1")

    @pytest.mark.asyncio
    async def test_has_payment_method(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.Customer.list_payment_methods_async", new_callable=AsyncMock) as list_methods:
            list_methods.return_value = MagicMock(data=[MagicMock(id="pm_1")])
            assert await provider.has_payment_method("cus_1") is True
        list_methods.assert_awaited_once_with("cus_1", limit=1, api_key="sk_test_1")

    @pytest.mark.asyncio
    async def test_has_no_payment_method(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.Customer.list_payment_methods_async", new_callable=AsyncMock) as list_methods:
            list_methods.return_value = MagicMock(data=[])
            assert await provider.has_payment_method("cus_1") is False

    @pytest.mark.asyncio
    async def test_end_trial_sends_trial_end_now(self) -> None:
        provider = StripeBillingProvider(api_key="sk_test_1")
        with patch("stripe.Subscription.modify_async", new_callable=AsyncMock) as modify:
            modify.return_value = _stripe_object(_subscription_payload())
            await provider.update_subscription("sub_1", SubscriptionUpdate(trial_end="now"))
        modify.assert_awaited_once_with("sub_1", trial_end="now", api_key="sk_test_1")
