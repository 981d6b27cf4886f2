"""Current-subscription lookups and subscription lifecycle helpers."""

from __future__ import annotations

import structlog

from planshift.billing.ports import PriceCatalogBase, SubscriptionProviderBase
from planshift.billing.sync import SubscriptionSync
from planshift.exceptions import BillingExceptionCode, InvalidStateError, NotFoundError
from planshift.models.database import BillingSubscriptionItem
from planshift.models.domain import SubscriptionSnapshot, SubscriptionUpdate, TrialEndResult
from planshift.models.mirror import MirrorSubscription
from planshift.storage.repositories.billing import BillingSubscriptionItemRepository, BillingSubscriptionRepository
from planshift.types import SubscriptionStatus

logger = structlog.get_logger(__name__)


class BillingSubscriptionService:
    def __init__(
        self,
        subscriptions: BillingSubscriptionRepository,
        items: BillingSubscriptionItemRepository,
        catalog: PriceCatalogBase,
        provider: SubscriptionProviderBase,
        sync: SubscriptionSync,
    ) -> None:
        self._subscriptions = subscriptions
        self._items = items
        self._catalog = catalog
        self._provider = provider
        self._sync = sync

    async def get_billing_subscriptions(self, workspace_id: str) -> list[MirrorSubscription]:
        return await self._subscriptions.find_by_workspace(workspace_id)

    async def get_current_subscription(
        self,
        workspace_id: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> MirrorSubscription | None:
        """The single not-canceled subscription matching the criteria, if any."""
        not_canceled = await self._subscriptions.find_not_canceled(
            workspace_id=workspace_id, stripe_customer_id=stripe_customer_id
        )
        if len(not_canceled) > 1:
            raise InvalidStateError(
                f"More than one not canceled subscription for workspace {workspace_id}",
                BillingExceptionCode.BILLING_TOO_MUCH_SUBSCRIPTIONS_FOUND,
            )
        return not_canceled[0] if not_canceled else None

    async def get_current_subscription_or_raise(
        self,
        workspace_id: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> MirrorSubscription:
        subscription = await self.get_current_subscription(
            workspace_id=workspace_id, stripe_customer_id=stripe_customer_id
        )
        if subscription is None:
            raise NotFoundError(
                f"No active subscription found for workspace {workspace_id}",
                BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND,
            )
        return subscription

    async def get_base_product_item_or_raise(self, workspace_id: str) -> BillingSubscriptionItem:
        """The seat item of the workspace's current subscription."""
        subscription = await self.get_current_subscription_or_raise(workspace_id=workspace_id)
        base_product = await self._catalog.get_plan_base_product(subscription.plan_key)
        if base_product is None:
            raise NotFoundError(
                "Base product not found",
                BillingExceptionCode.BILLING_PRODUCT_NOT_FOUND,
            )
        for mirror_item in subscription.items:
            if mirror_item.item.stripe_product_id == base_product.stripe_product_id:
                return mirror_item.item
        raise NotFoundError(
            f"No item for product {base_product.stripe_product_id} in workspace {workspace_id}",
            BillingExceptionCode.BILLING_SUBSCRIPTION_ITEM_NOT_FOUND,
        )

    async def delete_subscriptions(self, workspace_id: str) -> None:
        """Cancel the current subscription at the provider, then drop the mirror rows."""
        current = await self.get_current_subscription(workspace_id=workspace_id)
        if current is not None:
            await self._provider.cancel_subscription(current.stripe_subscription_id)
            logger.info(
                "subscription_canceled",
                workspace_id=workspace_id,
                stripe_subscription_id=current.stripe_subscription_id,
            )
        await self._subscriptions.delete_by_workspace(workspace_id)

    async def handle_unpaid_invoices(self, stripe_customer_id: str) -> str:
        """Retry the last invoice when the customer's subscription is unpaid.

        Returns the Stripe subscription id that was inspected.
        """
        subscription = await self.get_current_subscription_or_raise(stripe_customer_id=stripe_customer_id)
        if subscription.status == SubscriptionStatus.UNPAID:
            await self._provider.collect_last_invoice(subscription.stripe_subscription_id)
            logger.info(
                "unpaid_invoice_collected",
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=subscription.stripe_subscription_id,
            )
        return subscription.stripe_subscription_id

    async def set_billing_thresholds(self, billing_subscription_id: str) -> SubscriptionSnapshot:
        """Push the thresholds of the subscription's metered tier to the provider."""
        subscription = await self._subscriptions.get_by_id_or_raise(billing_subscription_id)
        metered = subscription.metered_item_or_raise()
        thresholds = await self._catalog.get_billing_thresholds_by_meter_price_id(metered.stripe_price_id)
        updated = await self._provider.update_subscription(
            subscription.stripe_subscription_id, SubscriptionUpdate(billing_thresholds=thresholds)
        )
        logger.info(
            "billing_thresholds_set",
            stripe_subscription_id=subscription.stripe_subscription_id,
            amount_gte=thresholds.amount_gte,
        )
        return updated

    async def end_trial_period(self, workspace_id: str) -> TrialEndResult:
        """End a trial now so the first period is charged.

        Nothing changes when the customer has no payment method on file.
        """
        subscription = await self.get_current_subscription_or_raise(workspace_id=workspace_id)
        if subscription.status != SubscriptionStatus.TRIALING:
            raise InvalidStateError(
                "Billing subscription is not in trial period",
                BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_IN_TRIAL_PERIOD,
            )
        if not await self._provider.has_payment_method(subscription.stripe_customer_id):
            logger.info("trial_end_skipped", workspace_id=workspace_id, reason="no_payment_method")
            return TrialEndResult(has_payment_method=False)

        updated = await self._provider.update_subscription(
            subscription.stripe_subscription_id, SubscriptionUpdate(trial_end="now")
        )
        await self._sync.sync(workspace_id, updated)
        await self._items.reset_period_cap(updated.id)
        logger.info("trial_ended", workspace_id=workspace_id, status=updated.status)
        return TrialEndResult(has_payment_method=True, status=SubscriptionStatus(updated.status))
