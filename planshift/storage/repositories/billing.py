"""Billing mirror repositories using SQLModel + AsyncSession."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog
from sqlmodel import SQLModel, col, delete, select
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.models.database import (
    BillingCustomer,
    BillingPrice,
    BillingProduct,
    BillingSubscription,
    BillingSubscriptionItem,
    _utc_now,
)
from planshift.models.mirror import MirrorItem, MirrorSubscription
from planshift.types import SubscriptionStatus

logger = structlog.get_logger(__name__)

_IMMUTABLE_COLUMNS = {"id", "created_at"}
# Usage state owned by the mirror, never carried by a provider snapshot
_ITEM_LOCAL_COLUMNS = {"has_reached_current_period_cap"}


def _copy_columns(target: SQLModel, source: SQLModel, keep: set[str] | None = None) -> None:
    """Overwrite the mutable columns of ``target`` with those of ``source``, except ``keep``."""
    for name, value in source.model_dump(exclude=_IMMUTABLE_COLUMNS | (keep or set())).items():
        setattr(target, name, value)
    target.updated_at = _utc_now()


async def _attach_items(
    session: AsyncSession, subscriptions: Sequence[BillingSubscription]
) -> list[MirrorSubscription]:
    """Load item rows (joined to their products) for each subscription."""
    if not subscriptions:
        return []
    ids = [s.id for s in subscriptions]
    statement = (
        select(BillingSubscriptionItem, BillingProduct)
        .join(
            BillingProduct,
            col(BillingSubscriptionItem.stripe_product_id) == col(BillingProduct.stripe_product_id),
            isouter=True,
        )
        .where(col(BillingSubscriptionItem.billing_subscription_id).in_(ids))
        .order_by(col(BillingSubscriptionItem.created_at))
    )
    results = await session.execute(statement)
    by_subscription: dict[str, list[MirrorItem]] = {sid: [] for sid in ids}
    for item, product in results.all():
        by_subscription[item.billing_subscription_id].append(MirrorItem(item=item, product=product))
    return [MirrorSubscription(subscription=s, items=by_subscription[s.id]) for s in subscriptions]


class BillingCustomerRepository:
    """Customer mirror rows, one per workspace."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def upsert(self, customer: BillingCustomer) -> BillingCustomer:
        """Insert or update the customer row keyed by ``workspace_id``."""
        async with AsyncSession(self._engine) as session:
            statement = select(BillingCustomer).where(
                col(BillingCustomer.workspace_id) == customer.workspace_id
            )
            results = await session.execute(statement)
            existing = results.scalars().first()
            if existing:
                if existing.stripe_customer_id != customer.stripe_customer_id:
                    _copy_columns(existing, customer)
                    session.add(existing)
                row = existing
            else:
                session.add(customer)
                row = customer
            await session.commit()
            await session.refresh(row)
            return row

    async def get_by_workspace(self, workspace_id: str) -> BillingCustomer | None:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingCustomer).where(col(BillingCustomer.workspace_id) == workspace_id)
            results = await session.execute(statement)
            return results.scalars().first()


class BillingSubscriptionRepository:
    """Subscription mirror rows keyed by Stripe subscription id."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def upsert(self, subscription: BillingSubscription) -> BillingSubscription:
        """Insert or update the row keyed by ``stripe_subscription_id``."""
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscription).where(
                col(BillingSubscription.stripe_subscription_id) == subscription.stripe_subscription_id
            )
            results = await session.execute(statement)
            existing = results.scalars().first()
            if existing:
                _copy_columns(existing, subscription)
                row = existing
            else:
                row = subscription
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row

    async def find_by_workspace(self, workspace_id: str) -> list[MirrorSubscription]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingSubscription)
                .where(col(BillingSubscription.workspace_id) == workspace_id)
                .order_by(col(BillingSubscription.created_at))
            )
            results = await session.execute(statement)
            return await _attach_items(session, results.scalars().all())

    async def find_not_canceled(
        self,
        workspace_id: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> list[MirrorSubscription]:
        """Return subscriptions not in ``canceled`` status matching the given criteria."""
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscription).where(
                col(BillingSubscription.status) != SubscriptionStatus.CANCELED.value
            )
            if workspace_id is not None:
                statement = statement.where(col(BillingSubscription.workspace_id) == workspace_id)
            if stripe_customer_id is not None:
                statement = statement.where(
                    col(BillingSubscription.stripe_customer_id) == stripe_customer_id
                )
            results = await session.execute(statement)
            return await _attach_items(session, results.scalars().all())

    async def get_by_stripe_id_or_raise(self, stripe_subscription_id: str) -> MirrorSubscription:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscription).where(
                col(BillingSubscription.stripe_subscription_id) == stripe_subscription_id
            )
            results = await session.execute(statement)
            row = results.scalars().first()
            if row is None:
                raise NotFoundError(
                    f"Billing subscription {stripe_subscription_id} not found",
                    BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND,
                )
            (mirror,) = await _attach_items(session, [row])
            return mirror

    async def get_by_id_or_raise(self, billing_subscription_id: str) -> MirrorSubscription:
        async with AsyncSession(self._engine) as session:
            row = await session.get(BillingSubscription, billing_subscription_id)
            if row is None:
                raise NotFoundError(
                    f"Billing subscription {billing_subscription_id} not found",
                    BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND,
                )
            (mirror,) = await _attach_items(session, [row])
            return mirror

    async def delete_by_workspace(self, workspace_id: str) -> int:
        """Delete every subscription (and its items) owned by a workspace."""
        async with AsyncSession(self._engine) as session:
            ids_result = await session.execute(
                select(BillingSubscription.id).where(col(BillingSubscription.workspace_id) == workspace_id)
            )
            ids = [sid for (sid,) in ids_result.all()]
            if ids:
                await session.execute(
                    delete(BillingSubscriptionItem).where(
                        col(BillingSubscriptionItem.billing_subscription_id).in_(ids)
                    )
                )
                await session.execute(delete(BillingSubscription).where(col(BillingSubscription.id).in_(ids)))
            await session.commit()
            logger.info("billing_subscriptions_deleted", workspace_id=workspace_id, count=len(ids))
            return len(ids)


class BillingSubscriptionItemRepository:
    """Subscription item mirror rows keyed by Stripe subscription item id."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_one(
        self, billing_subscription_id: str, stripe_product_id: str
    ) -> BillingSubscriptionItem | None:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscriptionItem).where(
                col(BillingSubscriptionItem.billing_subscription_id) == billing_subscription_id,
                col(BillingSubscriptionItem.stripe_product_id) == stripe_product_id,
            )
            results = await session.execute(statement)
            return results.scalars().first()

    async def delete(self, billing_subscription_id: str, stripe_product_id: str) -> None:
        async with AsyncSession(self._engine) as session:
            await session.execute(
                delete(BillingSubscriptionItem).where(
                    col(BillingSubscriptionItem.billing_subscription_id) == billing_subscription_id,
                    col(BillingSubscriptionItem.stripe_product_id) == stripe_product_id,
                )
            )
            await session.commit()

    async def upsert_many(self, items: Sequence[BillingSubscriptionItem]) -> None:
        """Insert or update each row keyed by ``stripe_subscription_item_id``."""
        async with AsyncSession(self._engine) as session:
            for item in items:
                statement = select(BillingSubscriptionItem).where(
                    col(BillingSubscriptionItem.stripe_subscription_item_id)
                    == item.stripe_subscription_item_id
                )
                results = await session.execute(statement)
                existing = results.scalars().first()
                if existing:
                    _copy_columns(existing, item, keep=_ITEM_LOCAL_COLUMNS)
                    session.add(existing)
                else:
                    session.add(item)
            await session.commit()

    async def list_for_subscription(self, billing_subscription_id: str) -> list[BillingSubscriptionItem]:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscriptionItem).where(
                col(BillingSubscriptionItem.billing_subscription_id) == billing_subscription_id
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def reset_period_cap(self, stripe_subscription_id: str) -> int:
        """Clear the cap-reached flag on every item of a subscription. Returns the rows touched."""
        async with AsyncSession(self._engine) as session:
            statement = select(BillingSubscriptionItem).where(
                col(BillingSubscriptionItem.stripe_subscription_id) == stripe_subscription_id
            )
            results = await session.execute(statement)
            rows = list(results.scalars().all())
            for row in rows:
                row.has_reached_current_period_cap = False
                row.updated_at = _utc_now()
                session.add(row)
            await session.commit()
            logger.debug("period_cap_reset", stripe_subscription_id=stripe_subscription_id, count=len(rows))
            return len(rows)


class BillingCatalogRepository:
    """Products and prices synced from Stripe."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_price_or_raise(self, stripe_price_id: str) -> tuple[BillingPrice, BillingProduct | None]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingPrice, BillingProduct)
                .join(
                    BillingProduct,
                    col(BillingPrice.stripe_product_id) == col(BillingProduct.stripe_product_id),
                    isouter=True,
                )
                .where(col(BillingPrice.stripe_price_id) == stripe_price_id)
            )
            results = await session.execute(statement)
            row = results.first()
            if row is None:
                raise NotFoundError(
                    f"Price {stripe_price_id} not found",
                    BillingExceptionCode.BILLING_PRICE_NOT_FOUND,
                )
            price, product = row
            return price, product

    async def list_prices(
        self, interval: str, plan_key: str
    ) -> list[tuple[BillingPrice, BillingProduct]]:
        """Active prices of a plan's active products for one billing interval."""
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingPrice, BillingProduct)
                .join(
                    BillingProduct,
                    col(BillingPrice.stripe_product_id) == col(BillingProduct.stripe_product_id),
                )
                .where(
                    col(BillingPrice.interval) == interval,
                    col(BillingPrice.active).is_(True),
                    col(BillingProduct.plan_key) == plan_key,
                    col(BillingProduct.active).is_(True),
                )
            )
            results = await session.execute(statement)
            return [(price, product) for price, product in results.all()]

    async def list_products(self, plan_key: str) -> list[BillingProduct]:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingProduct).where(
                col(BillingProduct.plan_key) == plan_key,
                col(BillingProduct.active).is_(True),
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def upsert_product(self, product: BillingProduct) -> BillingProduct:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingProduct).where(
                col(BillingProduct.stripe_product_id) == product.stripe_product_id
            )
            results = await session.execute(statement)
            existing = results.scalars().first()
            if existing:
                _copy_columns(existing, product)
                row = existing
            else:
                row = product
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.debug("billing_product_saved", stripe_product_id=row.stripe_product_id)
            return row

    async def upsert_price(self, price: BillingPrice) -> BillingPrice:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingPrice).where(col(BillingPrice.stripe_price_id) == price.stripe_price_id)
            results = await session.execute(statement)
            existing = results.scalars().first()
            if existing:
                _copy_columns(existing, price)
                row = existing
            else:
                row = price
            session.add(row)
            await session.commit()
            await session.refresh(row)
            logger.debug("billing_price_saved", stripe_price_id=row.stripe_price_id)
            return row
