"""Transition engine: plan, interval and metered-tier changes against subscription schedules.

Every change is classified as one of:

* no-op: the subscription (and its next phase, if any) is already on target;
* immediate: applied now through a subscription update with prorations
  (plan upgrade, or month to year with a billing-cycle re-anchor);
* deferred: the current phase is frozen and a next phase starting at period
  end carries the target prices (plan or interval downgrade, metered downgrade);
* metered upgrade: the metered item is swapped now without proration, then
  both schedule phases are rebuilt around the new price.

Provider state is re-read after every mutation before the next decision.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from planshift.billing.locks import SubscriptionLocks
from planshift.billing.phases import PhaseCodec
from planshift.billing.plans import opposite_interval, opposite_plan
from planshift.billing.ports import PriceCatalogBase, ScheduleProviderBase, SubscriptionProviderBase
from planshift.billing.prices import PriceResolver, ResolvedPrices
from planshift.billing.schedule import ScheduleLoader, ScheduleState, ScheduleWithNext
from planshift.billing.subscriptions import BillingSubscriptionService
from planshift.billing.sync import SubscriptionSync
from planshift.config.logging import bound_subscription
from planshift.exceptions import BillingExceptionCode, InvalidStateError, NotFoundError, NotSwitchableError
from planshift.models.domain import (
    CatalogPrice,
    PhaseDetails,
    PhaseUpdatePayload,
    ScheduleUpdate,
    SubscriptionItemUpdate,
    SubscriptionSchedule,
    SubscriptionSnapshot,
    SubscriptionUpdate,
)
from planshift.models.mirror import MirrorSubscription
from planshift.storage.repositories.billing import BillingSubscriptionRepository
from planshift.types import (
    PlanKey,
    PriceUpdateType,
    ProrationBehavior,
    SubscriptionInterval,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PhaseTarget:
    """Prices and seat count a phase or subscription should move to."""

    licensed_price_id: str
    metered_price_id: str
    seats: int

    @classmethod
    def from_resolved(cls, prices: ResolvedPrices, seats: int) -> PhaseTarget:
        return cls(
            licensed_price_id=prices.licensed.stripe_price_id,
            metered_price_id=prices.metered.stripe_price_id,
            seats=seats,
        )


@dataclass(frozen=True)
class MeteredSwitchContext:
    """Everything a metered-tier switch decides on, read once before any mutation."""

    state: ScheduleState
    current_details: PhaseDetails
    current_cap: int
    target_cap: int
    mapped_current_metered_id: str
    mapped_next_metered_id: str

    @property
    def is_upgrade(self) -> bool:
        return self.target_cap > self.current_cap


@dataclass(frozen=True)
class PhasePlan:
    """Current and next phase payloads before deduplication."""

    current: PhaseUpdatePayload | None
    next: PhaseUpdatePayload | None


def build_schedule_update(
    current: PhaseUpdatePayload | None, next_phase: PhaseUpdatePayload | None
) -> ScheduleUpdate | None:
    """Pair phase payloads for a schedule write. A next phase needs a current one."""
    if current is None:
        if next_phase is not None:
            raise InvalidStateError(
                "Invalid schedule update: next phase cannot be defined without current phase",
                BillingExceptionCode.BILLING_SUBSCRIPTION_INVALID,
            )
        return None
    return ScheduleUpdate(current_phase=current, next_phase=next_phase)


def _interval_of(details: PhaseDetails) -> SubscriptionInterval:
    if details.interval is None:
        raise InvalidStateError(
            f"Price {details.metered_price.stripe_price_id} has no billing interval",
            BillingExceptionCode.BILLING_PRICE_INVALID,
        )
    return details.interval


def _cap_of(price: CatalogPrice) -> int:
    if not price.is_metered or price.cap is None:
        raise InvalidStateError(
            f"Price {price.stripe_price_id} is not a metered price with a tier cap",
            BillingExceptionCode.BILLING_PRICE_INVALID,
        )
    return price.cap


def _next_phase_base(subscription: SubscriptionSnapshot, current: PhaseUpdatePayload) -> PhaseUpdatePayload:
    """Skeleton of a phase starting when the current billing period ends."""
    return PhaseUpdatePayload(
        start_date=subscription.current_period_end,
        items=current.items,
        proration_behavior=ProrationBehavior.NONE,
    )


class SubscriptionTransitionService:
    """Public entry points are keyed by workspace and serialized per subscription."""

    def __init__(
        self,
        subscriptions: BillingSubscriptionService,
        mirror: BillingSubscriptionRepository,
        catalog: PriceCatalogBase,
        subscription_provider: SubscriptionProviderBase,
        schedule_provider: ScheduleProviderBase,
        sync: SubscriptionSync,
        locks: SubscriptionLocks,
    ) -> None:
        self._subscriptions = subscriptions
        self._mirror = mirror
        self._catalog = catalog
        self._subscription_provider = subscription_provider
        self._schedules = schedule_provider
        self._sync = sync
        self._locks = locks
        self._codec = PhaseCodec(catalog)
        self._resolver = PriceResolver(catalog)
        self._loader = ScheduleLoader(schedule_provider)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def change_plan(self, workspace_id: str) -> None:
        """Switch PRO <-> ENTERPRISE."""
        async with self._transition(workspace_id, "change_plan") as mirror:
            await self._set_target_plan(mirror, opposite_plan(mirror.plan_key))

    async def change_interval(self, workspace_id: str) -> None:
        """Switch month <-> year."""
        async with self._transition(workspace_id, "change_interval") as mirror:
            await self._set_target_interval(mirror, opposite_interval(mirror.subscription.interval or ""))

    async def change_metered_price(self, workspace_id: str, target_metered_price_id: str) -> None:
        async with self._transition(workspace_id, "change_metered_price") as mirror:
            await self._change_metered_price(mirror, target_metered_price_id)

    async def cancel_switch_plan(self, workspace_id: str) -> None:
        """Drop a pending ENTERPRISE -> PRO downgrade."""
        async with self._transition(workspace_id, "cancel_switch_plan") as mirror:
            await self._set_target_plan(mirror, PlanKey.ENTERPRISE)

    async def cancel_switch_interval(self, workspace_id: str) -> None:
        """Drop a pending year -> month downgrade."""
        async with self._transition(workspace_id, "cancel_switch_interval") as mirror:
            await self._set_target_interval(mirror, SubscriptionInterval.YEAR)

    async def cancel_switch_metered_price(self, workspace_id: str) -> None:
        """Drop a pending metered downgrade by re-targeting the current metered price."""
        async with self._transition(workspace_id, "cancel_switch_metered_price") as mirror:
            state = await self._loader.load(mirror.stripe_subscription_id)
            current = await self._codec.decode_subscription(state.subscription)
            await self._change_metered_price(mirror, current.metered_price.stripe_price_id)

    @asynccontextmanager
    async def _transition(self, workspace_id: str, operation: str) -> AsyncIterator[MirrorSubscription]:
        mirror = await self._subscriptions.get_current_subscription_or_raise(workspace_id=workspace_id)
        async with self._locks.hold(mirror.stripe_subscription_id):
            with bound_subscription(mirror.stripe_subscription_id, operation):
                # Mirror as of lock acquisition
                mirror = await self._subscriptions.get_current_subscription_or_raise(workspace_id=workspace_id)
                logger.info("transition_started", workspace_id=workspace_id)
                yield mirror
                logger.info("transition_finished", workspace_id=workspace_id)

    # ------------------------------------------------------------------
    # Plan state machine
    # ------------------------------------------------------------------

    async def _set_target_plan(self, mirror: MirrorSubscription, target: PlanKey) -> None:
        state = await self._loader.load(mirror.stripe_subscription_id)
        current = await self._codec.decode_subscription(state.subscription)
        interval = _interval_of(current)
        current_metered_id = current.metered_price.stripe_price_id

        if current.plan_key == target:
            if state.next_phase is None:
                logger.info("plan_already_on_target", plan_key=target)
                return
            next_details = await self._codec.decode(state.next_phase)
            if next_details.plan_key == target:
                logger.info("plan_already_on_target", plan_key=target)
                return
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=_interval_of(next_details),
                plan_key=target,
                metered_price_id=next_details.metered_price.stripe_price_id,
                update_type=PriceUpdateType.PLAN,
            )
            logger.info("next_phase_plan_corrected", plan_key=target)
            await self._defer(mirror, PhaseTarget.from_resolved(prices, next_details.quantity))
            return

        if current.plan_key == PlanKey.PRO and target == PlanKey.ENTERPRISE:
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=interval,
                plan_key=target,
                metered_price_id=current_metered_id,
                update_type=PriceUpdateType.PLAN,
            )
            await self._upgrade_now(mirror, PhaseTarget.from_resolved(prices, current.quantity), target)

            async def remap(next_details: PhaseDetails) -> ResolvedPrices:
                return await self._resolver.resolve_licensed_and_metered(
                    interval=_interval_of(next_details),
                    plan_key=target,
                    metered_price_id=next_details.metered_price.stripe_price_id,
                    update_type=PriceUpdateType.PLAN,
                )

            await self._rebuild_next_phase(mirror, remap)
            return

        if current.plan_key == PlanKey.ENTERPRISE and target == PlanKey.PRO:
            next_details = await self._codec.decode(state.next_phase) if state.next_phase else None
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=_interval_of(next_details) if next_details else interval,
                plan_key=target,
                metered_price_id=(
                    next_details.metered_price.stripe_price_id if next_details else current_metered_id
                ),
                update_type=PriceUpdateType.PLAN,
            )
            logger.info("plan_downgrade_deferred", plan_key=target)
            await self._defer(mirror, PhaseTarget.from_resolved(prices, current.quantity))
            return

        logger.warning("plan_not_switchable", current_plan=current.plan_key, target_plan=target)
        raise NotSwitchableError(
            f"Unhandled plan transition from {current.plan_key} to {target}",
            BillingExceptionCode.BILLING_SUBSCRIPTION_PLAN_NOT_SWITCHABLE,
        )

    # ------------------------------------------------------------------
    # Interval state machine
    # ------------------------------------------------------------------

    async def _set_target_interval(self, mirror: MirrorSubscription, target: SubscriptionInterval) -> None:
        state = await self._loader.load(mirror.stripe_subscription_id)
        current = await self._codec.decode_subscription(state.subscription)
        interval = _interval_of(current)
        current_metered_id = current.metered_price.stripe_price_id

        if interval == target:
            if state.next_phase is None:
                logger.info("interval_already_on_target", interval=target)
                return
            next_details = await self._codec.decode(state.next_phase)
            if next_details.interval == target:
                logger.info("interval_already_on_target", interval=target)
                return
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=target,
                plan_key=next_details.plan_key,
                metered_price_id=next_details.metered_price.stripe_price_id,
                update_type=PriceUpdateType.INTERVAL,
            )
            logger.info("next_phase_interval_corrected", interval=target)
            await self._defer(mirror, PhaseTarget.from_resolved(prices, next_details.quantity))
            return

        if interval == SubscriptionInterval.MONTH and target == SubscriptionInterval.YEAR:
            if mirror.status == SubscriptionStatus.TRIALING:
                logger.warning("interval_not_switchable_while_trialing")
                raise NotSwitchableError(
                    "Interval cannot be changed from Month to Year while trialing",
                    BillingExceptionCode.BILLING_SUBSCRIPTION_INTERVAL_NOT_SWITCHABLE,
                )
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=SubscriptionInterval.YEAR,
                plan_key=current.plan_key,
                metered_price_id=current_metered_id,
                update_type=PriceUpdateType.INTERVAL,
            )
            await self._upgrade_interval_now(mirror, PhaseTarget.from_resolved(prices, current.quantity))

            async def remap(next_details: PhaseDetails) -> ResolvedPrices:
                return await self._resolver.resolve_licensed_and_metered(
                    interval=SubscriptionInterval.YEAR,
                    plan_key=next_details.plan_key,
                    metered_price_id=next_details.metered_price.stripe_price_id,
                    update_type=PriceUpdateType.INTERVAL,
                )

            await self._rebuild_next_phase(mirror, remap)
            return

        if interval == SubscriptionInterval.YEAR and target == SubscriptionInterval.MONTH:
            next_details = await self._codec.decode(state.next_phase) if state.next_phase else None
            prices = await self._resolver.resolve_licensed_and_metered(
                interval=SubscriptionInterval.MONTH,
                plan_key=next_details.plan_key if next_details else current.plan_key,
                metered_price_id=(
                    next_details.metered_price.stripe_price_id if next_details else current_metered_id
                ),
                update_type=PriceUpdateType.INTERVAL,
            )
            logger.info("interval_downgrade_deferred", interval=target)
            await self._defer(mirror, PhaseTarget.from_resolved(prices, current.quantity))
            return

        logger.warning("interval_not_switchable", current_interval=interval, target_interval=target)
        raise NotSwitchableError(
            f"Unhandled interval transition from {interval} to {target}",
            BillingExceptionCode.BILLING_SUBSCRIPTION_INTERVAL_NOT_SWITCHABLE,
        )

    # ------------------------------------------------------------------
    # Metered tier
    # ------------------------------------------------------------------

    async def _change_metered_price(self, mirror: MirrorSubscription, target_metered_price_id: str) -> None:
        context = await self._load_metered_context(mirror, target_metered_price_id)
        state = context.state
        if context.is_upgrade:
            await self._replace_current_metered_item(mirror, context.mapped_current_metered_id)
            state = await self._loader.load(mirror.stripe_subscription_id)

        phase_plan = await self._plan_metered_phases(context, state)
        subscription = state.subscription

        next_payload = phase_plan.next
        if (
            phase_plan.current is not None
            and next_payload is not None
            and await self._codec.same_signature(phase_plan.current, next_payload)
        ):
            next_payload = None
        current_payload = (
            phase_plan.current.model_copy(update={"end_date": subscription.current_period_end})
            if phase_plan.current is not None
            else None
        )
        update = build_schedule_update(current_payload, next_payload)

        if state.schedule is not None and next_payload is None:
            await self._schedules.release(state.schedule.id)
            logger.info("schedule_released", schedule_id=state.schedule.id)

        if update is not None and update.next_phase is not None:
            if state.schedule is not None:
                schedule_id = state.schedule.id
            else:
                created = await self._schedules.create_schedule_from_subscription(subscription.id)
                schedule_id = created.id
                logger.info("schedule_created", schedule_id=schedule_id)
                if not context.is_upgrade:
                    update = self._with_created_current_phase(update, created, subscription)
            await self._schedules.replace_editable_phases(schedule_id, update)
            logger.info("phases_replaced", schedule_id=schedule_id)

        refreshed = await self._schedules.get_subscription_with_schedule(subscription.id)
        await self._sync.sync(mirror.workspace_id, refreshed)

    async def _load_metered_context(
        self, mirror: MirrorSubscription, target_metered_price_id: str
    ) -> MeteredSwitchContext:
        state = await self._loader.load(mirror.stripe_subscription_id)
        current = await self._codec.decode_subscription(state.subscription)
        next_details = await self._codec.decode(state.next_phase) if state.next_phase else None
        target_price = await self._catalog.get_metered_price(target_metered_price_id)
        mapped_current = await self._resolver.map_metered_for_phase(
            current.plan_key, _interval_of(current), target_metered_price_id
        )
        next_base = next_details or current
        mapped_next = await self._resolver.map_metered_for_phase(
            next_base.plan_key, _interval_of(next_base), target_metered_price_id
        )
        context = MeteredSwitchContext(
            state=state,
            current_details=current,
            current_cap=_cap_of(current.metered_price),
            target_cap=_cap_of(target_price),
            mapped_current_metered_id=mapped_current,
            mapped_next_metered_id=mapped_next,
        )
        logger.info(
            "metered_switch_classified",
            current_cap=context.current_cap,
            target_cap=context.target_cap,
            is_upgrade=context.is_upgrade,
        )
        return context

    async def _plan_metered_phases(self, context: MeteredSwitchContext, state: ScheduleState) -> PhasePlan:
        """Current and next payloads for a metered switch, from freshly loaded state."""
        if state.current_phase is not None:
            current = self._codec.to_update_payload(state.current_phase)
        else:
            current = self._codec.payload_from_subscription(state.subscription)
        existing_next = self._codec.to_update_payload(state.next_phase) if state.next_phase else None
        next_details = await self._codec.decode(state.next_phase) if state.next_phase else None

        current_licensed_id = self._codec.licensed_price_id_of(current)
        next_licensed_id = (
            self._codec.licensed_price_id_of(existing_next) if existing_next else current_licensed_id
        )
        seats = context.current_details.quantity

        if context.is_upgrade:
            current = await self._codec.build_update_payload(
                current, current_licensed_id, seats, context.mapped_current_metered_id
            )
        next_payload = await self._codec.build_update_payload(
            _next_phase_base(state.subscription, current),
            next_licensed_id,
            next_details.quantity if next_details else seats,
            context.mapped_next_metered_id,
        )
        return PhasePlan(current=current, next=next_payload)

    def _with_created_current_phase(
        self, update: ScheduleUpdate, schedule: SubscriptionSchedule, subscription: SubscriptionSnapshot
    ) -> ScheduleUpdate:
        """Rewrite an untouched current phase from the schedule the provider just created.

        The created phase carries the subscription's live billing thresholds, which
        the subscription snapshot alone does not.
        """
        created_current, _ = self._schedules.get_current_and_next_phases(schedule)
        if created_current is None:
            return update
        current = self._codec.to_update_payload(created_current)
        return update.model_copy(
            update={"current_phase": current.model_copy(update={"end_date": subscription.current_period_end})}
        )

    # ------------------------------------------------------------------
    # Provider mutations
    # ------------------------------------------------------------------

    async def _defer(self, mirror: MirrorSubscription, target: PhaseTarget) -> None:
        """Keep the current phase as is and schedule ``target`` from period end."""
        subscription = await self._schedules.get_subscription_with_schedule(mirror.stripe_subscription_id)
        schedule = await self._schedules.find_or_create_subscription_schedule(subscription)
        current_phase, _ = self._schedules.get_current_and_next_phases(schedule)
        if current_phase is None:
            raise NotFoundError(
                f"No editable phase found on schedule {schedule.id}",
                BillingExceptionCode.BILLING_SUBSCRIPTION_PHASE_NOT_FOUND,
            )
        current = self._codec.to_update_payload(current_phase)
        next_payload = await self._codec.build_update_payload(
            _next_phase_base(subscription, current),
            target.licensed_price_id,
            target.seats,
            target.metered_price_id,
        )
        await self._write_phases(mirror, subscription, schedule.id, current, next_payload)

    async def _rebuild_next_phase(
        self,
        mirror: MirrorSubscription,
        remap: Callable[[PhaseDetails], Awaitable[ResolvedPrices]],
    ) -> None:
        """After an immediate change, re-target an existing next phase onto the new prices."""
        state = await self._loader.load(mirror.stripe_subscription_id)
        if not isinstance(state, ScheduleWithNext):
            return
        next_details = await self._codec.decode(state.next_phase)
        prices = await remap(next_details)
        current = self._codec.to_update_payload(state.current_phase)
        next_payload = await self._codec.build_update_payload(
            _next_phase_base(state.subscription, current),
            prices.licensed.stripe_price_id,
            next_details.quantity,
            prices.metered.stripe_price_id,
        )
        await self._write_phases(mirror, state.subscription, state.schedule.id, current, next_payload)

    async def _write_phases(
        self,
        mirror: MirrorSubscription,
        subscription: SubscriptionSnapshot,
        schedule_id: str,
        current: PhaseUpdatePayload,
        next_payload: PhaseUpdatePayload | None,
    ) -> None:
        """Persist current+next together, or release the schedule when next adds nothing."""
        if next_payload is not None and await self._codec.same_signature(current, next_payload):
            logger.info("next_phase_deduplicated", schedule_id=schedule_id)
            next_payload = None
        update = build_schedule_update(
            current.model_copy(update={"end_date": subscription.current_period_end}),
            next_payload,
        )
        if update is None or update.next_phase is None:
            await self._schedules.release(schedule_id)
            logger.info("schedule_released", schedule_id=schedule_id)
        else:
            await self._schedules.replace_editable_phases(schedule_id, update)
            logger.info("phases_replaced", schedule_id=schedule_id)

        refreshed = await self._schedules.get_subscription_with_schedule(subscription.id)
        await self._sync.sync(mirror.workspace_id, refreshed)

    async def _update_items(
        self,
        mirror: MirrorSubscription,
        target: PhaseTarget,
        proration: ProrationBehavior,
        billing_cycle_anchor: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionSnapshot:
        licensed = mirror.licensed_item_or_raise()
        metered = mirror.metered_item_or_raise()
        update = SubscriptionUpdate(
            items=[
                SubscriptionItemUpdate(
                    id=licensed.stripe_subscription_item_id,
                    price=target.licensed_price_id,
                    quantity=target.seats,
                ),
                SubscriptionItemUpdate(id=metered.stripe_subscription_item_id, price=target.metered_price_id),
            ],
            billing_cycle_anchor=billing_cycle_anchor,
            proration_behavior=proration,
            metadata=metadata,
            billing_thresholds=await self._catalog.get_billing_thresholds_by_meter_price_id(
                target.metered_price_id
            ),
        )
        return await self._subscription_provider.update_subscription(mirror.stripe_subscription_id, update)

    async def _upgrade_now(self, mirror: MirrorSubscription, target: PhaseTarget, plan_key: PlanKey) -> None:
        stored = await self._mirror.get_by_stripe_id_or_raise(mirror.stripe_subscription_id)
        updated = await self._update_items(
            stored,
            target,
            ProrationBehavior.CREATE_PRORATIONS,
            metadata={**stored.metadata, "plan": plan_key.value},
        )
        logger.info("plan_upgraded_now", plan_key=plan_key)
        await self._sync.sync(stored.workspace_id, updated)

    async def _upgrade_interval_now(self, mirror: MirrorSubscription, target: PhaseTarget) -> None:
        stored = await self._mirror.get_by_stripe_id_or_raise(mirror.stripe_subscription_id)
        updated = await self._update_items(
            stored,
            target,
            ProrationBehavior.CREATE_PRORATIONS,
            billing_cycle_anchor="now",
        )
        logger.info("interval_upgraded_now")
        await self._sync.sync(stored.workspace_id, updated)

    async def _replace_current_metered_item(self, mirror: MirrorSubscription, metered_price_id: str) -> None:
        stored = await self._mirror.get_by_stripe_id_or_raise(mirror.stripe_subscription_id)
        licensed = stored.licensed_item_or_raise()
        if licensed.quantity is None:
            raise InvalidStateError(
                f"Quantity is not defined on licensed item {licensed.stripe_subscription_item_id}",
                BillingExceptionCode.BILLING_SUBSCRIPTION_INVALID,
            )
        target = PhaseTarget(
            licensed_price_id=licensed.stripe_price_id,
            metered_price_id=metered_price_id,
            seats=licensed.quantity,
        )
        updated = await self._update_items(stored, target, ProrationBehavior.NONE)
        logger.info("metered_price_upgraded_now", metered_price_id=metered_price_id)
        await self._sync.sync(stored.workspace_id, updated)
