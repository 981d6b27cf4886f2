"""Price catalog: database-backed with an in-memory fallback."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from planshift.billing.ports import PriceCatalogBase
from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.models.database import BillingPrice, BillingProduct
from planshift.models.domain import BillingPlan, BillingThresholds, CatalogPrice, CatalogProduct, PriceTier
from planshift.storage.repositories.billing import BillingCatalogRepository
from planshift.types import PlanKey, ProductKey, SubscriptionInterval, UsageType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

DEFAULT_OVERAGE_AMOUNT = 10_000


def product_from_row(row: BillingProduct) -> CatalogProduct:
    return CatalogProduct(
        stripe_product_id=row.stripe_product_id,
        name=row.name,
        plan_key=PlanKey(row.plan_key) if row.plan_key else None,
        product_key=ProductKey(row.product_key) if row.product_key else None,
        usage_type=UsageType(row.usage_type) if row.usage_type else None,
    )


def price_from_row(row: BillingPrice, product: BillingProduct | None = None) -> CatalogPrice:
    tiers = [PriceTier.model_validate(t) for t in json.loads(row.tiers_json or "[]")]
    return CatalogPrice(
        stripe_price_id=row.stripe_price_id,
        stripe_product_id=row.stripe_product_id,
        interval=SubscriptionInterval(row.interval) if row.interval else None,
        usage_type=UsageType(row.usage_type),
        tiers=tiers,
        product=product_from_row(product) if product is not None else None,
    )


def thresholds_for(price: CatalogPrice, overage_amount: int) -> BillingThresholds:
    """Invoice once usage costs ``overage_amount`` beyond the lowest tier's flat fee."""
    flat_amount = price.tiers[0].flat_amount or 0
    return BillingThresholds(amount_gte=flat_amount + overage_amount, reset_billing_cycle_anchor=False)


def plan_from_products(plan_key: PlanKey, products: list[CatalogProduct]) -> BillingPlan:
    return BillingPlan(
        plan_key=plan_key,
        licensed_products=[p for p in products if p.usage_type == UsageType.LICENSED],
        metered_products=[p for p in products if p.usage_type == UsageType.METERED],
    )


def _plan_not_found(stripe_price_id: str) -> NotFoundError:
    return NotFoundError(
        f"No plan found for price {stripe_price_id}",
        BillingExceptionCode.BILLING_PLAN_NOT_FOUND,
    )


class DatabasePriceCatalog(PriceCatalogBase):
    """Catalog backed by the billing_products / billing_prices tables."""

    def __init__(self, engine: AsyncEngine, overage_amount: int = DEFAULT_OVERAGE_AMOUNT) -> None:
        self._repo = BillingCatalogRepository(engine)
        self._overage_amount = overage_amount

    async def get_product_prices(
        self, interval: SubscriptionInterval, plan_key: PlanKey
    ) -> list[CatalogPrice]:
        rows = await self._repo.list_prices(interval.value, plan_key.value)
        return [price_from_row(price, product) for price, product in rows]

    async def find_price(self, stripe_price_id: str) -> CatalogPrice:
        price, product = await self._repo.get_price_or_raise(stripe_price_id)
        return price_from_row(price, product)

    async def get_plan_by_price_id(self, stripe_price_id: str) -> BillingPlan:
        price = await self.find_price(stripe_price_id)
        if price.product is None or price.product.plan_key is None:
            raise _plan_not_found(stripe_price_id)
        plan_key = price.product.plan_key
        products = [product_from_row(row) for row in await self._repo.list_products(plan_key.value)]
        return plan_from_products(plan_key, products)

    async def get_plan_base_product(self, plan_key: PlanKey) -> CatalogProduct | None:
        for row in await self._repo.list_products(plan_key.value):
            if row.product_key == ProductKey.BASE_PRODUCT:
                return product_from_row(row)
        return None

    async def get_billing_thresholds_by_meter_price_id(self, stripe_price_id: str) -> BillingThresholds:
        return thresholds_for(await self.get_metered_price(stripe_price_id), self._overage_amount)


class InMemoryPriceCatalog(PriceCatalogBase):
    """In-memory fallback for dev/testing without a database."""

    def __init__(
        self,
        products: list[CatalogProduct],
        prices: list[CatalogPrice],
        overage_amount: int = DEFAULT_OVERAGE_AMOUNT,
    ) -> None:
        self._products = {p.stripe_product_id: p for p in products}
        self._prices: dict[str, CatalogPrice] = {}
        for price in prices:
            product = price.product or self._products.get(price.stripe_product_id)
            self._prices[price.stripe_price_id] = price.model_copy(update={"product": product})
        self._overage_amount = overage_amount

    async def get_product_prices(
        self, interval: SubscriptionInterval, plan_key: PlanKey
    ) -> list[CatalogPrice]:
        return [
            p
            for p in self._prices.values()
            if p.interval == interval and p.product is not None and p.product.plan_key == plan_key
        ]

    async def find_price(self, stripe_price_id: str) -> CatalogPrice:
        price = self._prices.get(stripe_price_id)
        if price is None:
            raise NotFoundError(
                f"Price {stripe_price_id} not found",
                BillingExceptionCode.BILLING_PRICE_NOT_FOUND,
            )
        return price

    async def get_plan_by_price_id(self, stripe_price_id: str) -> BillingPlan:
        price = await self.find_price(stripe_price_id)
        if price.product is None or price.product.plan_key is None:
            raise _plan_not_found(stripe_price_id)
        plan_key = price.product.plan_key
        return plan_from_products(plan_key, [p for p in self._products.values() if p.plan_key == plan_key])

    async def get_plan_base_product(self, plan_key: PlanKey) -> CatalogProduct | None:
        for product in self._products.values():
            if product.plan_key == plan_key and product.product_key == ProductKey.BASE_PRODUCT:
                return product
        return None

    async def get_billing_thresholds_by_meter_price_id(self, stripe_price_id: str) -> BillingThresholds:
        return thresholds_for(await self.get_metered_price(stripe_price_id), self._overage_amount)
