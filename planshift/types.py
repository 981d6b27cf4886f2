"""Enums and type aliases for planshift."""

from enum import StrEnum


class PlanKey(StrEnum):
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionInterval(StrEnum):
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class UsageType(StrEnum):
    LICENSED = "LICENSED"
    METERED = "METERED"


class ProductKey(StrEnum):
    BASE_PRODUCT = "BASE_PRODUCT"
    WORKFLOW_NODE_EXECUTION = "WORKFLOW_NODE_EXECUTION"


class ProrationBehavior(StrEnum):
    CREATE_PRORATIONS = "create_prorations"
    NONE = "none"
    ALWAYS_INVOICE = "always_invoice"


class PriceUpdateType(StrEnum):
    """Which dimension a price resolution switches."""

    INTERVAL = "interval"
    PLAN = "plan"
