"""add billing catalog and subscription mirror tables

Revision ID: a7c1e3f5b9d2
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a7c1e3f5b9d2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add catalog, customer, subscription and subscription item tables."""
    op.create_table(
        "billing_products",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_product_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=""),
        sa.Column("plan_key", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("product_key", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("usage_type", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_billing_products_stripe_product_id"), "billing_products", ["stripe_product_id"], unique=True
    )
    op.create_index(op.f("ix_billing_products_plan_key"), "billing_products", ["plan_key"])

    op.create_table(
        "billing_prices",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_price_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_product_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("interval", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "usage_type", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="LICENSED"
        ),
        sa.Column("tiers_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["stripe_product_id"], ["billing_products.stripe_product_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_billing_prices_stripe_price_id"), "billing_prices", ["stripe_price_id"], unique=True
    )
    op.create_index(op.f("ix_billing_prices_stripe_product_id"), "billing_prices", ["stripe_product_id"])

    op.create_table(
        "billing_customers",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("workspace_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_customer_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_customers_workspace_id"), "billing_customers", ["workspace_id"], unique=True)
    op.create_index(
        op.f("ix_billing_customers_stripe_customer_id"), "billing_customers", ["stripe_customer_id"], unique=True
    )

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("workspace_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_customer_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column(
            "status", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="active"
        ),
        sa.Column("interval", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("metadata_json", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="{}"),
        sa.Column("phases_json", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_subscriptions_workspace_id"), "billing_subscriptions", ["workspace_id"])
    op.create_index(
        op.f("ix_billing_subscriptions_stripe_customer_id"), "billing_subscriptions", ["stripe_customer_id"]
    )
    op.create_index(
        op.f("ix_billing_subscriptions_stripe_subscription_id"),
        "billing_subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )

    op.create_table(
        "billing_subscription_items",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("billing_subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_subscription_item_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_product_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("stripe_price_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column(
            "has_reached_current_period_cap", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["billing_subscription_id"], ["billing_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_billing_subscription_items_billing_subscription_id"),
        "billing_subscription_items",
        ["billing_subscription_id"],
    )
    op.create_index(
        op.f("ix_billing_subscription_items_stripe_subscription_id"),
        "billing_subscription_items",
        ["stripe_subscription_id"],
    )
    op.create_index(
        op.f("ix_billing_subscription_items_stripe_subscription_item_id"),
        "billing_subscription_items",
        ["stripe_subscription_item_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_billing_subscription_items_stripe_product_id"),
        "billing_subscription_items",
        ["stripe_product_id"],
    )


def downgrade() -> None:
    """Remove billing catalog and mirror tables."""
    op.drop_table("billing_subscription_items")
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_customers")
    op.drop_table("billing_prices")
    op.drop_table("billing_products")
