"""Price resolution across plans, intervals and metered tiers.

Tier caps differ between plans and intervals, so a switch keeps the usage
headroom of the reference metered price: it picks the highest candidate whose
cap does not exceed the reference cap (a floor match), falling back to the
smallest candidate when every cap is above it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from planshift.billing.plans import scale_cap
from planshift.billing.ports import PriceCatalogBase
from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.models.domain import CatalogPrice
from planshift.types import PlanKey, PriceUpdateType, ProductKey, SubscriptionInterval


@dataclass(frozen=True)
class ResolvedPrices:
    licensed: CatalogPrice
    metered: CatalogPrice


def filter_metered_candidates(
    prices: Iterable[CatalogPrice], interval: SubscriptionInterval | None = None
) -> list[CatalogPrice]:
    """Metered prices (optionally of one interval) sorted ascending by cap."""
    pool = [p for p in prices if p.is_metered and (interval is None or p.interval == interval)]
    return sorted(pool, key=lambda p: p.cap or 0)


def floor_match(candidates: list[CatalogPrice], reference_cap: float) -> CatalogPrice:
    """Pick the highest-cap candidate not above ``reference_cap``, else the smallest.

    ``candidates`` must already be sorted ascending by cap.
    """
    if not candidates:
        raise NotFoundError(
            "No metered candidates found for mapping",
            BillingExceptionCode.BILLING_PRICE_NOT_FOUND,
        )
    below = [c for c in candidates if (c.cap or 0) <= reference_cap]
    return below[-1] if below else candidates[0]


class PriceResolver:
    def __init__(self, catalog: PriceCatalogBase) -> None:
        self._catalog = catalog

    async def _match_floor(
        self,
        prices: list[CatalogPrice],
        reference_price_id: str,
        target_interval: SubscriptionInterval | None = None,
    ) -> CatalogPrice:
        reference = await self._catalog.get_metered_price(reference_price_id)
        reference_cap: float = reference.cap or 0
        if target_interval is not None and reference.interval is not None:
            reference_cap = scale_cap(reference_cap, reference.interval, target_interval)
        return floor_match(filter_metered_candidates(prices, target_interval), reference_cap)

    async def resolve_for_interval(
        self,
        prices: list[CatalogPrice],
        reference_price_id: str,
        target_interval: SubscriptionInterval,
    ) -> CatalogPrice:
        """Map a metered price onto ``target_interval``, scaling its cap first."""
        return await self._match_floor(prices, reference_price_id, target_interval)

    async def resolve_for_plan_switch(self, prices: list[CatalogPrice], reference_price_id: str) -> CatalogPrice:
        """Map a metered price onto another plan's catalog of the same interval."""
        return await self._match_floor(prices, reference_price_id)

    async def resolve_for_metered_switch(
        self,
        prices: list[CatalogPrice],
        target_metered_price_id: str,
        interval: SubscriptionInterval,
    ) -> CatalogPrice:
        """Map an explicitly requested metered price onto an equivalent-cap price of ``interval``."""
        return await self._match_floor(prices, target_metered_price_id, interval)

    async def resolve_licensed_and_metered(
        self,
        interval: SubscriptionInterval,
        plan_key: PlanKey,
        metered_price_id: str,
        update_type: PriceUpdateType,
    ) -> ResolvedPrices:
        """Target base licensed price and mapped metered price for a plan+interval."""
        prices = await self._catalog.get_product_prices(interval=interval, plan_key=plan_key)
        licensed = next((p for p in prices if p.product_key == ProductKey.BASE_PRODUCT), None)
        if licensed is None:
            raise NotFoundError(
                f"No base product price for plan {plan_key} ({interval})",
                BillingExceptionCode.BILLING_PRICE_NOT_FOUND,
            )
        if update_type == PriceUpdateType.INTERVAL:
            metered = await self.resolve_for_interval(prices, metered_price_id, interval)
        else:
            metered = await self.resolve_for_plan_switch(prices, metered_price_id)
        return ResolvedPrices(licensed=licensed, metered=metered)

    async def map_metered_for_phase(
        self,
        plan_key: PlanKey,
        interval: SubscriptionInterval,
        target_metered_price_id: str,
    ) -> str:
        """Price id equivalent to ``target_metered_price_id`` within a plan+interval catalog."""
        prices = await self._catalog.get_product_prices(interval=interval, plan_key=plan_key)
        mapped = await self.resolve_for_metered_switch(prices, target_metered_price_id, interval)
        return mapped.stripe_price_id
