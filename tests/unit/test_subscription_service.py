"""Unit tests for BillingSubscriptionService (DB-backed with SQLite)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from factories import (
    CUSTOMER_ID,
    METER_PRICE_PRO_MONTH_HIGH_ID,
    SEATS,
    SUBSCRIPTION_ID,
    WORKSPACE_ID,
    make_subscription,
    start_billing,
)
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from planshift.exceptions import BillingExceptionCode, InvalidStateError, NotFoundError
from planshift.models.database import BillingSubscriptionItem
from planshift.models.domain import TrialEndResult
from planshift.types import SubscriptionStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from planshift.billing.catalog import DatabasePriceCatalog
    from planshift.config.settings import Settings


@pytest.mark.unit
class TestCurrentSubscription:
    @pytest.mark.asyncio
    async def test_returns_single_not_canceled(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, _ = await start_billing(async_engine, db_catalog, test_settings, make_subscription())
        current = await services.subscriptions.get_current_subscription(workspace_id=WORKSPACE_ID)
        assert current is not None
        assert current.stripe_subscription_id == SUBSCRIPTION_ID

    @pytest.mark.asyncio
    async def test_lookup_by_customer(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, _ = await start_billing(async_engine, db_catalog, test_settings, make_subscription())
        current = await services.subscriptions.get_current_subscription_or_raise(stripe_customer_id=CUSTOMER_ID)
        assert current.workspace_id == WORKSPACE_ID

    @pytest.mark.asyncio
    async def test_canceled_subscription_is_ignored(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, _ = await start_billing(
            async_engine, db_catalog, test_settings, make_subscription(status="canceled")
        )
        assert await services.subscriptions.get_current_subscription(workspace_id=WORKSPACE_ID) is None
        with pytest.raises(NotFoundError) as exc_info:
            await services.subscriptions.get_current_subscription_or_raise(workspace_id=WORKSPACE_ID)
        assert exc_info.value.code == BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_two_live_subscriptions_is_invalid(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, _ = await start_billing(async_engine, db_catalog, test_settings, make_subscription())
        await services.sync.sync(WORKSPACE_ID, make_subscription(subscription_id="sub_second"))

        with pytest.raises(InvalidStateError) as exc_info:
            await services.subscriptions.get_current_subscription(workspace_id=WORKSPACE_ID)
        assert exc_info.value.code == BillingExceptionCode.BILLING_TOO_MUCH_SUBSCRIPTIONS_FOUND
        assert len(await services.subscriptions.get_billing_subscriptions(WORKSPACE_ID)) == 2

    @pytest.mark.asyncio
    async def test_base_product_item(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, _ = await start_billing(async_engine, db_catalog, test_settings, make_subscription())
        item = await services.subscriptions.get_base_product_item_or_raise(WORKSPACE_ID)
        assert item.stripe_subscription_item_id == "si_licensed"
        assert item.quantity == SEATS


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_delete_subscriptions_cancels_then_forgets(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(async_engine, db_catalog, test_settings, make_subscription())

        await services.subscriptions.delete_subscriptions(WORKSPACE_ID)

        assert provider.canceled == [SUBSCRIPTION_ID]
        assert await services.subscriptions.get_billing_subscriptions(WORKSPACE_ID) == []

    @pytest.mark.asyncio
    async def test_delete_without_live_subscription_skips_provider(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(
            async_engine, db_catalog, test_settings, make_subscription(status="canceled")
        )

        await services.subscriptions.delete_subscriptions(WORKSPACE_ID)

        assert provider.canceled == []
        assert await services.subscriptions.get_billing_subscriptions(WORKSPACE_ID) == []

    @pytest.mark.asyncio
    async def test_unpaid_subscription_collects_last_invoice(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(
            async_engine, db_catalog, test_settings, make_subscription(status="unpaid")
        )

        inspected = await services.subscriptions.handle_unpaid_invoices(CUSTOMER_ID)

        assert inspected == SUBSCRIPTION_ID
        assert provider.collected == [SUBSCRIPTION_ID]

    @pytest.mark.asyncio
    async def test_active_subscription_is_left_alone(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(async_engine, db_catalog, test_settings, make_subscription())

        await services.subscriptions.handle_unpaid_invoices(CUSTOMER_ID)

        assert provider.collected == []


async def _mark_cap_reached(engine: AsyncEngine) -> None:
    async with AsyncSession(engine) as session:
        results = await session.execute(select(BillingSubscriptionItem))
        for row in results.scalars().all():
            row.has_reached_current_period_cap = True
            session.add(row)
        await session.commit()


@pytest.mark.unit
class TestBillingThresholds:
    @pytest.mark.asyncio
    async def test_pushes_metered_tier_thresholds(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        subscription = make_subscription(metered_price_id=METER_PRICE_PRO_MONTH_HIGH_ID)
        services, provider = await start_billing(async_engine, db_catalog, test_settings, subscription)
        mirror = await services.subscriptions.get_current_subscription_or_raise(workspace_id=WORKSPACE_ID)

        await services.subscriptions.set_billing_thresholds(mirror.id)

        (update,) = provider.updates
        assert update.items == []
        assert update.billing_thresholds is not None
        assert update.billing_thresholds.amount_gte == 12_000
        assert update.billing_thresholds.reset_billing_cycle_anchor is False

    @pytest.mark.asyncio
    async def test_unknown_billing_subscription_raises(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(async_engine, db_catalog, test_settings, make_subscription())

        with pytest.raises(NotFoundError) as exc_info:
            await services.subscriptions.set_billing_thresholds("missing-id")

        assert exc_info.value.code == BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND
        assert provider.updates == []


@pytest.mark.unit
class TestEndTrialPeriod:
    @pytest.mark.asyncio
    async def test_ends_trial_and_clears_period_cap(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(
            async_engine, db_catalog, test_settings, make_subscription(status="trialing")
        )
        await _mark_cap_reached(async_engine)

        result = await services.subscriptions.end_trial_period(WORKSPACE_ID)

        assert result == TrialEndResult(has_payment_method=True, status=SubscriptionStatus.ACTIVE)
        (update,) = provider.updates
        assert update.trial_end == "now"
        assert update.to_params() == {"trial_end": "now"}
        mirror = await services.subscriptions.get_current_subscription_or_raise(workspace_id=WORKSPACE_ID)
        assert mirror.status == SubscriptionStatus.ACTIVE
        assert [m.item.has_reached_current_period_cap for m in mirror.items] == [False, False]

    @pytest.mark.asyncio
    async def test_without_payment_method_changes_nothing(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(
            async_engine, db_catalog, test_settings, make_subscription(status="trialing")
        )
        provider.payment_method = False

        result = await services.subscriptions.end_trial_period(WORKSPACE_ID)

        assert result == TrialEndResult(has_payment_method=False)
        assert provider.updates == []
        mirror = await services.subscriptions.get_current_subscription_or_raise(workspace_id=WORKSPACE_ID)
        assert mirror.status == SubscriptionStatus.TRIALING

    @pytest.mark.asyncio
    async def test_active_subscription_is_not_in_trial(
        self, async_engine: AsyncEngine, db_catalog: DatabasePriceCatalog, test_settings: Settings
    ) -> None:
        services, provider = await start_billing(async_engine, db_catalog, test_settings, make_subscription())

        with pytest.raises(InvalidStateError) as exc_info:
            await services.subscriptions.end_trial_period(WORKSPACE_ID)

        assert exc_info.value.code == BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_IN_TRIAL_PERIOD
        assert provider.updates == []
