"""Phase codec: decode schedule phases into plan and prices, and build phase update payloads."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from planshift.billing.ports import PriceCatalogBase
from planshift.exceptions import BillingExceptionCode, NotFoundError, PhaseDecodeError
from planshift.models.domain import (
    PhaseDetails,
    PhaseItem,
    PhaseSignature,
    PhaseUpdatePayload,
    SchedulePhase,
    SubscriptionSnapshot,
)
from planshift.types import ProrationBehavior

logger = structlog.get_logger(__name__)


def _single(items: Sequence[PhaseItem], metered: bool, source: str) -> PhaseItem:
    """Return the one metered (no quantity) or licensed (has quantity) item."""
    matches = [i for i in items if (i.quantity is None) == metered]
    kind = "metered" if metered else "licensed"
    if not matches:
        raise PhaseDecodeError(f"No {kind} item on {source}")
    if len(matches) > 1:
        raise PhaseDecodeError(f"{len(matches)} {kind} items on {source}, expected exactly one")
    return matches[0]


class PhaseCodec:
    """Translates between provider phases and the engine's decoded view."""

    def __init__(self, catalog: PriceCatalogBase) -> None:
        self._catalog = catalog

    async def decode(self, phase: SchedulePhase) -> PhaseDetails:
        """Decode a schedule phase. Raises PhaseDecodeError when it is malformed."""
        return await self._decode_items(phase.items, f"phase starting {phase.start_date}")

    async def decode_subscription(self, subscription: SubscriptionSnapshot) -> PhaseDetails:
        """Decode the live subscription's items the same way as a phase."""
        items = [PhaseItem(price=i.price_id, quantity=i.quantity) for i in subscription.items]
        return await self._decode_items(items, f"subscription {subscription.id}")

    async def _decode_items(self, items: Sequence[PhaseItem], source: str) -> PhaseDetails:
        metered_item = _single(items, metered=True, source=source)
        licensed_item = _single(items, metered=False, source=source)
        try:
            metered_price = await self._catalog.find_price(metered_item.price)
            licensed_price = await self._catalog.find_price(licensed_item.price)
            plan = await self._catalog.get_plan_by_price_id(metered_price.stripe_price_id)
        except NotFoundError as e:
            raise PhaseDecodeError(f"Cannot decode {source}: {e.message}", e.code) from e
        if licensed_item.quantity is None:
            raise PhaseDecodeError(f"Quantity is not defined on {source}")
        return PhaseDetails(
            plan=plan,
            metered_price=metered_price,
            licensed_price=licensed_price,
            quantity=licensed_item.quantity,
            interval=metered_price.interval,
        )

    def to_update_payload(self, phase: SchedulePhase) -> PhaseUpdatePayload:
        """Snapshot a phase in update shape, with proration disabled for reuse."""
        return PhaseUpdatePayload(
            start_date=phase.start_date,
            end_date=phase.end_date,
            items=[PhaseItem(price=i.price, quantity=i.quantity) for i in phase.items],
            billing_thresholds=phase.billing_thresholds,
            proration_behavior=ProrationBehavior.NONE,
        )

    def payload_from_subscription(self, subscription: SubscriptionSnapshot) -> PhaseUpdatePayload:
        """The implicit current phase of a subscription that has no schedule."""
        return PhaseUpdatePayload(
            start_date=subscription.current_period_start,
            items=[PhaseItem(price=i.price_id, quantity=i.quantity) for i in subscription.items],
            proration_behavior=ProrationBehavior.NONE,
        )

    async def build_update_payload(
        self,
        base: PhaseUpdatePayload,
        licensed_price_id: str,
        seats: int,
        metered_price_id: str,
    ) -> PhaseUpdatePayload:
        """Two-item phase on ``base``'s dates: licensed at ``seats`` plus the metered price."""
        return PhaseUpdatePayload(
            start_date=base.start_date,
            end_date=base.end_date,
            proration_behavior=base.proration_behavior or ProrationBehavior.NONE,
            items=[
                PhaseItem(price=licensed_price_id, quantity=seats),
                PhaseItem(price=metered_price_id),
            ],
            billing_thresholds=await self._catalog.get_billing_thresholds_by_meter_price_id(metered_price_id),
        )

    def licensed_price_id_of(self, payload: PhaseUpdatePayload) -> str:
        for item in payload.items:
            if item.quantity is not None:
                return item.price
        raise NotFoundError(
            "No licensed item on phase update",
            BillingExceptionCode.BILLING_SUBSCRIPTION_ITEM_NOT_FOUND,
        )

    async def signature(self, payload: PhaseUpdatePayload) -> PhaseSignature:
        metered_item = next((i for i in payload.items if i.quantity is None), None)
        if metered_item is None:
            raise PhaseDecodeError("No metered item on phase update")
        metered_price = await self._catalog.find_price(metered_item.price)
        plan = await self._catalog.get_plan_by_price_id(metered_item.price)
        return PhaseSignature(
            plan_key=plan.plan_key,
            interval=metered_price.interval,
            metered_price_id=metered_item.price,
        )

    async def same_signature(self, a: PhaseUpdatePayload, b: PhaseUpdatePayload) -> bool:
        """Whether two phases bill the same plan, interval and metered price.

        Best effort: a phase that cannot be decoded compares unequal.
        """
        try:
            return await self.signature(a) == await self.signature(b)
        except Exception as e:
            logger.debug("phase_signature_undecodable", error=str(e), error_type=type(e).__name__)
            return False
