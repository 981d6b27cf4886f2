"""Unit tests for the planshift command line."""

import json
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from planshift.config.settings import Settings
from planshift.exceptions import BillingExceptionCode, NotFoundError
from planshift.main import build_parser, cli
from planshift.models.database import BillingProduct, BillingSubscription, BillingSubscriptionItem
from planshift.models.domain import TrialEndResult
from planshift.models.mirror import MirrorItem, MirrorSubscription
from planshift.types import SubscriptionStatus


def _services() -> MagicMock:
    services = MagicMock()
    services.transitions = AsyncMock()
    services.subscriptions = AsyncMock()
    return services


def _mirror() -> MirrorSubscription:
    subscription = BillingSubscription(
        id="bs-1",
        workspace_id="ws-1",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        status="active",
        interval="month",
    )
    item = BillingSubscriptionItem(
        billing_subscription_id="bs-1",
        stripe_subscription_id="sub_1",
        stripe_subscription_item_id="si_1",
        stripe_product_id="prod_pro_base",
        stripe_price_id="price_license_pro_month",
        quantity=4,
    )
    product = BillingProduct(stripe_product_id="prod_pro_base", plan_key="PRO", usage_type="LICENSED")
    return MirrorSubscription(subscription=subscription, items=[MirrorItem(item=item, product=product)])


@pytest.fixture()
def cli_env() -> Iterator[MagicMock]:
    """Patch settings, logging and service wiring around cli()."""
    services = _services()
    with (
        patch("planshift.main.get_settings", return_value=Settings(_env_file=None)),
        patch("planshift.main.setup_logging"),
        patch("planshift.main.build_billing_services", return_value=services),
    ):
        yield services


@pytest.mark.unit
class TestParser:
    def test_workspace_command(self) -> None:
        args = build_parser().parse_args(["change-plan", "ws-1"])
        assert args.command == "change-plan"
        assert args.workspace_id == "ws-1"

    def test_metered_price_command(self) -> None:
        args = build_parser().parse_args(["change-metered-price", "ws-1", "price_meter_5k"])
        assert args.price_id == "price_meter_5k"

    def test_unpaid_invoices_takes_customer(self) -> None:
        args = build_parser().parse_args(["handle-unpaid-invoices", "cus_1"])
        assert args.customer_id == "cus_1"

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


@pytest.mark.unit
class TestCli:
    def test_change_plan_dispatches(self, cli_env: MagicMock) -> None:
        assert cli(["change-plan", "ws-1"]) == 0
        cli_env.transitions.change_plan.assert_awaited_once_with("ws-1")

    def test_change_metered_price_dispatches(self, cli_env: MagicMock) -> None:
        assert cli(["change-metered-price", "ws-1", "price_meter_5k"]) == 0
        cli_env.transitions.change_metered_price.assert_awaited_once_with("ws-1", "price_meter_5k")

    def test_cancel_switch_interval_dispatches(self, cli_env: MagicMock) -> None:
        assert cli(["cancel-switch-interval", "ws-1"]) == 0
        cli_env.transitions.cancel_switch_interval.assert_awaited_once_with("ws-1")

    def test_handle_unpaid_invoices_dispatches(self, cli_env: MagicMock) -> None:
        assert cli(["handle-unpaid-invoices", "cus_1"]) == 0
        cli_env.subscriptions.handle_unpaid_invoices.assert_awaited_once_with("cus_1")

    def test_set_billing_thresholds_dispatches(self, cli_env: MagicMock) -> None:
        assert cli(["set-billing-thresholds", "bs-1"]) == 0
        cli_env.subscriptions.set_billing_thresholds.assert_awaited_once_with("bs-1")

    def test_end_trial_period_prints_outcome(self, cli_env: MagicMock, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.subscriptions.end_trial_period.return_value = TrialEndResult(
            has_payment_method=True, status=SubscriptionStatus.ACTIVE
        )

        assert cli(["end-trial-period", "ws-1"]) == 0

        cli_env.subscriptions.end_trial_period.assert_awaited_once_with("ws-1")
        assert json.loads(capsys.readouterr().out) == {"has_payment_method": True, "status": "active"}

    def test_billing_error_exits_nonzero(self, cli_env: MagicMock) -> None:
        cli_env.transitions.change_interval.side_effect = NotFoundError(
            "No active subscription", BillingExceptionCode.BILLING_SUBSCRIPTION_NOT_FOUND
        )
        assert cli(["change-interval", "ws-1"]) == 1

    def test_show_prints_summary(self, cli_env: MagicMock, capsys: pytest.CaptureFixture[str]) -> None:
        cli_env.subscriptions.get_current_subscription_or_raise.return_value = _mirror()

        assert cli(["show", "ws-1"]) == 0

        summary = json.loads(capsys.readouterr().out)
        assert summary["stripe_subscription_id"] == "sub_1"
        assert summary["plan"] == "PRO"
        assert summary["items"] == [{"price": "price_license_pro_month", "quantity": 4, "usage_type": "LICENSED"}]
        assert summary["phases"] == []

    def test_init_db_skips_services(self, cli_env: MagicMock) -> None:
        with patch("planshift.storage.database.init_db", new_callable=AsyncMock) as init_db:
            assert cli(["init-db"]) == 0
        init_db.assert_awaited_once()
        cli_env.transitions.assert_not_called()
