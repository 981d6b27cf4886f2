"""Exception hierarchy for planshift."""

from enum import StrEnum


class BillingExceptionCode(StrEnum):
    BILLING_SUBSCRIPTION_NOT_FOUND = "BILLING_SUBSCRIPTION_NOT_FOUND"
    BILLING_TOO_MUCH_SUBSCRIPTIONS_FOUND = "BILLING_TOO_MUCH_SUBSCRIPTIONS_FOUND"
    BILLING_PRODUCT_NOT_FOUND = "BILLING_PRODUCT_NOT_FOUND"
    BILLING_PRICE_NOT_FOUND = "BILLING_PRICE_NOT_FOUND"
    BILLING_PRICE_INVALID = "BILLING_PRICE_INVALID"
    BILLING_PLAN_NOT_FOUND = "BILLING_PLAN_NOT_FOUND"
    BILLING_SUBSCRIPTION_PHASE_NOT_FOUND = "BILLING_SUBSCRIPTION_PHASE_NOT_FOUND"
    BILLING_SUBSCRIPTION_ITEM_NOT_FOUND = "BILLING_SUBSCRIPTION_ITEM_NOT_FOUND"
    BILLING_SUBSCRIPTION_INVALID = "BILLING_SUBSCRIPTION_INVALID"
    BILLING_SUBSCRIPTION_NOT_IN_TRIAL_PERIOD = "BILLING_SUBSCRIPTION_NOT_IN_TRIAL_PERIOD"
    BILLING_SUBSCRIPTION_INTERVAL_NOT_SWITCHABLE = "BILLING_SUBSCRIPTION_INTERVAL_NOT_SWITCHABLE"
    BILLING_SUBSCRIPTION_PLAN_NOT_SWITCHABLE = "BILLING_SUBSCRIPTION_PLAN_NOT_SWITCHABLE"


class PlanShiftError(Exception):
    """Base exception for all planshift errors."""


class ConfigError(PlanShiftError):
    """Raised when configuration is invalid."""


class BillingError(PlanShiftError):
    """Raised when a billing operation cannot proceed.

    Carries a machine-readable ``code`` next to the human message.
    """

    def __init__(self, message: str, code: BillingExceptionCode) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class NotFoundError(BillingError):
    """Raised when a subscription, price, product, phase or item is missing."""


class InvalidStateError(BillingError):
    """Raised when stored or provider data violates a billing invariant."""


class NotSwitchableError(BillingError):
    """Raised when an unsupported plan or interval transition is requested."""


class PhaseDecodeError(NotFoundError):
    """Raised when a schedule phase cannot be decoded into plan and prices."""

    def __init__(
        self,
        message: str,
        code: BillingExceptionCode = BillingExceptionCode.BILLING_SUBSCRIPTION_ITEM_NOT_FOUND,
    ) -> None:
        super().__init__(message, code)
