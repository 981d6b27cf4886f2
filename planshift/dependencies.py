"""Service wiring for billing transitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from planshift.billing.catalog import DatabasePriceCatalog
from planshift.billing.locks import SubscriptionLocks
from planshift.billing.ports import PriceCatalogBase, ScheduleProviderBase, SubscriptionProviderBase
from planshift.billing.stripe_client import StripeBillingProvider
from planshift.billing.subscriptions import BillingSubscriptionService
from planshift.billing.sync import SubscriptionSync
from planshift.billing.transitions import SubscriptionTransitionService
from planshift.config.settings import Settings, get_settings
from planshift.exceptions import ConfigError
from planshift.storage.repositories.billing import (
    BillingCustomerRepository,
    BillingSubscriptionItemRepository,
    BillingSubscriptionRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BillingServices:
    catalog: PriceCatalogBase
    subscriptions: BillingSubscriptionService
    sync: SubscriptionSync
    transitions: SubscriptionTransitionService


def create_price_catalog(engine: AsyncEngine, settings: Settings) -> PriceCatalogBase:
    """Create the database-backed price catalog, the only source wired from settings."""
    if not settings.use_database:
        logger.error("price_catalog_unconfigured", use_database=False)
        msg = "USE_DATABASE is disabled and no price catalog was provided"
        raise ConfigError(msg)
    return DatabasePriceCatalog(engine, overage_amount=settings.billing_threshold_overage_amount)


def create_stripe_provider(settings: Settings) -> StripeBillingProvider:
    if settings.stripe_secret_key is None:
        msg = "STRIPE_SECRET_KEY must be set to call Stripe"
        raise ConfigError(msg)
    return StripeBillingProvider(settings.stripe_secret_key, api_version=settings.stripe_api_version)


def build_billing_services(
    engine: AsyncEngine | None = None,
    settings: Settings | None = None,
    provider: SubscriptionProviderBase | None = None,
    schedules: ScheduleProviderBase | None = None,
    catalog: PriceCatalogBase | None = None,
    locks: SubscriptionLocks | None = None,
) -> BillingServices:
    """Assemble the billing services; any collaborator can be overridden."""
    settings = settings or get_settings()
    if engine is None:
        from planshift.storage.database import get_engine

        engine = get_engine()
    if provider is None or schedules is None:
        stripe_provider = create_stripe_provider(settings)
        provider = provider or stripe_provider
        schedules = schedules or stripe_provider
    catalog = catalog or create_price_catalog(engine, settings)

    subscription_repo = BillingSubscriptionRepository(engine)
    item_repo = BillingSubscriptionItemRepository(engine)
    sync = SubscriptionSync(
        customers=BillingCustomerRepository(engine),
        subscriptions=subscription_repo,
        items=item_repo,
        schedules=schedules,
    )
    subscriptions = BillingSubscriptionService(subscription_repo, item_repo, catalog, provider, sync)
    transitions = SubscriptionTransitionService(
        subscriptions=subscriptions,
        mirror=subscription_repo,
        catalog=catalog,
        subscription_provider=provider,
        schedule_provider=schedules,
        sync=sync,
        locks=locks or SubscriptionLocks(enabled=settings.transition_lock_enabled),
    )
    return BillingServices(catalog=catalog, subscriptions=subscriptions, sync=sync, transitions=transitions)
