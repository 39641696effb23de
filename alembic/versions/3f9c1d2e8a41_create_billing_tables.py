"""create billing tables

Revision ID: 3f9c1d2e8a41
Revises:
Create Date: 2026-10-19 10:12:44.318204

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "3f9c1d2e8a41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "billing_plans",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("key", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("display_name", sa.String(), nullable=True),
    sa.Column("description", sa.String(), nullable=True),
    sa.Column("price", sa.Numeric(10, 2), nullable=False),
    sa.Column("interval", sa.String(), nullable=False),
    sa.Column("stripe_price_id", sa.String(), nullable=True),
    sa.Column("team_limit", sa.Integer(), nullable=True),
    sa.Column("member_limit", sa.Integer(), nullable=True),
    sa.Column("standup_config_limit", sa.Integer(), nullable=True),
    sa.Column("standup_limit", sa.Integer(), nullable=True),
    sa.Column("is_active", sa.Boolean(), nullable=False),
    sa.Column("sort_order", sa.Integer(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("key"),
  )
  op.create_index(
    "idx_billing_plan_active_sort",
    "billing_plans",
    ["is_active", "sort_order"],
    unique=False,
  )

  op.create_table(
    "billing_accounts",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("org_id", sa.String(), nullable=False),
    sa.Column("stripe_customer_id", sa.String(), nullable=False),
    sa.Column("billing_email", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("org_id"),
    sa.UniqueConstraint("stripe_customer_id"),
  )

  op.create_table(
    "billing_subscriptions",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("billing_account_id", sa.String(), nullable=False),
    sa.Column("plan_id", sa.String(), nullable=False),
    sa.Column("stripe_subscription_id", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
    sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
    sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(["billing_account_id"], ["billing_accounts.id"]),
    sa.ForeignKeyConstraint(["plan_id"], ["billing_plans.id"]),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("billing_account_id"),
    sa.UniqueConstraint("stripe_subscription_id"),
  )
  op.create_index(
    "idx_billing_sub_status", "billing_subscriptions", ["status"], unique=False
  )
  op.create_index(
    "idx_billing_sub_period_end",
    "billing_subscriptions",
    ["current_period_end"],
    unique=False,
  )


def downgrade() -> None:
  op.drop_index("idx_billing_sub_period_end", table_name="billing_subscriptions")
  op.drop_index("idx_billing_sub_status", table_name="billing_subscriptions")
  op.drop_table("billing_subscriptions")
  op.drop_table("billing_accounts")
  op.drop_index("idx_billing_plan_active_sort", table_name="billing_plans")
  op.drop_table("billing_plans")
