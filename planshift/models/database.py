"""SQLModel database table models for the billing mirror."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class BillingProduct(SQLModel, table=True):
    __tablename__ = "billing_products"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    stripe_product_id: str = Field(unique=True, index=True)
    name: str = ""
    plan_key: str | None = Field(default=None, index=True)  # PRO | ENTERPRISE
    product_key: str | None = None  # BASE_PRODUCT | WORKFLOW_NODE_EXECUTION
    usage_type: str | None = None  # LICENSED | METERED
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class BillingPrice(SQLModel, table=True):
    __tablename__ = "billing_prices"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    stripe_price_id: str = Field(unique=True, index=True)
    stripe_product_id: str = Field(foreign_key="billing_products.stripe_product_id", index=True)
    interval: str | None = None  # month | year
    usage_type: str = Field(default="LICENSED")
    tiers_json: str | None = None
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Customer and subscription mirror
# ---------------------------------------------------------------------------


class BillingCustomer(SQLModel, table=True):
    __tablename__ = "billing_customers"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    workspace_id: str = Field(unique=True, index=True)
    stripe_customer_id: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class BillingSubscription(SQLModel, table=True):
    __tablename__ = "billing_subscriptions"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    workspace_id: str = Field(index=True)
    stripe_customer_id: str = Field(index=True)
    stripe_subscription_id: str = Field(unique=True, index=True)
    status: str = Field(default="active")  # active | trialing | canceled | unpaid | ...
    interval: str | None = None  # month | year
    cancel_at_period_end: bool = Field(default=False)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    metadata_json: str = Field(default="{}")
    phases_json: str = Field(default="[]")
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class BillingSubscriptionItem(SQLModel, table=True):
    __tablename__ = "billing_subscription_items"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    billing_subscription_id: str = Field(foreign_key="billing_subscriptions.id", index=True)
    stripe_subscription_id: str = Field(index=True)
    stripe_subscription_item_id: str = Field(unique=True, index=True)
    stripe_product_id: str = Field(index=True)
    stripe_price_id: str
    quantity: int | None = None  # None for metered items
    has_reached_current_period_cap: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
