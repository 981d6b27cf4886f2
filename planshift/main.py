"""PlanShift entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Awaitable, Callable

import structlog

from planshift.config.logging import setup_logging
from planshift.config.settings import get_settings
from planshift.dependencies import BillingServices, build_billing_services
from planshift.exceptions import PlanShiftError

logger = structlog.get_logger(__name__)

Command = Callable[[BillingServices, argparse.Namespace], Awaitable[None]]


async def _change_plan(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.change_plan(args.workspace_id)


async def _change_interval(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.change_interval(args.workspace_id)


async def _change_metered_price(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.change_metered_price(args.workspace_id, args.price_id)


async def _cancel_switch_plan(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.cancel_switch_plan(args.workspace_id)


async def _cancel_switch_interval(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.cancel_switch_interval(args.workspace_id)


async def _cancel_switch_metered_price(services: BillingServices, args: argparse.Namespace) -> None:
    await services.transitions.cancel_switch_metered_price(args.workspace_id)


async def _show(services: BillingServices, args: argparse.Namespace) -> None:
    subscription = await services.subscriptions.get_current_subscription_or_raise(workspace_id=args.workspace_id)
    summary = {
        "stripe_subscription_id": subscription.stripe_subscription_id,
        "status": subscription.status,
        "interval": subscription.interval,
        "plan": subscription.plan_key,
        "items": [
            {
                "price": mirror_item.item.stripe_price_id,
                "quantity": mirror_item.item.quantity,
                "usage_type": mirror_item.usage_type,
            }
            for mirror_item in subscription.items
        ],
        "phases": json.loads(subscription.subscription.phases_json),
    }
    print(json.dumps(summary, indent=2, default=str))


async def _delete_subscriptions(services: BillingServices, args: argparse.Namespace) -> None:
    await services.subscriptions.delete_subscriptions(args.workspace_id)


async def _handle_unpaid_invoices(services: BillingServices, args: argparse.Namespace) -> None:
    await services.subscriptions.handle_unpaid_invoices(args.customer_id)


async def _end_trial_period(services: BillingServices, args: argparse.Namespace) -> None:
    result = await services.subscriptions.end_trial_period(args.workspace_id)
    print(json.dumps({"has_payment_method": result.has_payment_method, "status": result.status}))


async def _set_billing_thresholds(services: BillingServices, args: argparse.Namespace) -> None:
    await services.subscriptions.set_billing_thresholds(args.billing_subscription_id)


_WORKSPACE_COMMANDS: dict[str, tuple[Command, str]] = {
    "change-plan": (_change_plan, "Switch between PRO and ENTERPRISE"),
    "change-interval": (_change_interval, "Switch between monthly and yearly billing"),
    "cancel-switch-plan": (_cancel_switch_plan, "Drop a pending plan downgrade"),
    "cancel-switch-interval": (_cancel_switch_interval, "Drop a pending interval downgrade"),
    "cancel-switch-metered-price": (_cancel_switch_metered_price, "Drop a pending metered tier downgrade"),
    "show": (_show, "Print the mirrored subscription of a workspace"),
    "delete-subscriptions": (_delete_subscriptions, "Cancel and forget a workspace's subscriptions"),
    "end-trial-period": (_end_trial_period, "End a trial now and charge the first period"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planshift", description="Subscription plan transitions")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, (handler, help_text) in _WORKSPACE_COMMANDS.items():
        command = commands.add_parser(name, help=help_text)
        command.add_argument("workspace_id")
        command.set_defaults(handler=handler)

    metered = commands.add_parser("change-metered-price", help="Move to another metered tier")
    metered.add_argument("workspace_id")
    metered.add_argument("price_id", help="Stripe id of the target metered price")
    metered.set_defaults(handler=_change_metered_price)

    unpaid = commands.add_parser("handle-unpaid-invoices", help="Retry the last invoice of an unpaid subscription")
    unpaid.add_argument("customer_id", help="Stripe customer id")
    unpaid.set_defaults(handler=_handle_unpaid_invoices)

    thresholds = commands.add_parser("set-billing-thresholds", help="Push metered tier thresholds to Stripe")
    thresholds.add_argument("billing_subscription_id", help="Local mirror id of the subscription")
    thresholds.set_defaults(handler=_set_billing_thresholds)

    commands.add_parser("init-db", help="Create the billing tables").set_defaults(handler=None)
    return parser


async def run(args: argparse.Namespace) -> None:
    if args.handler is None:
        from planshift.storage.database import init_db

        await init_db()
        logger.info("database_initialized")
        return
    services = build_billing_services()
    await args.handler(services, args)


def cli(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_output=settings.json_logs)
    try:
        asyncio.run(run(args))
    except PlanShiftError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli())
