"""Loyalty core: customers, point ledger, tiers, transactions, rewards, push.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = postgresql.UUID(as_uuid=True)

staff_role = sa.Enum("ADMIN", "RESTAURANT_ADMIN", "STAFF", name="staff_role")
point_entry_type = sa.Enum("EARNED", "SPENT", "EXPIRED", "ADJUSTED", name="point_entry_type")
transaction_status = sa.Enum("COMPLETED", "CANCELLED", name="transaction_status")
reward_source = sa.Enum("MANUAL", "CAMPAIGN", "MILESTONE", "TIER", name="reward_source")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "staff_users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", staff_role, nullable=False, server_default="STAFF"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_staff_users_email", "staff_users", ["email"], unique=True)

    op.create_table(
        "tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False, unique=True),
        sa.Column("min_total_spent", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_visit_count", sa.Integer(), nullable=True),
        sa.Column("min_points", sa.Integer(), nullable=True),
        sa.Column("point_multiplier", sa.Numeric(4, 2), nullable=False, server_default="1"),
        sa.Column("discount_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "customers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True, unique=True),
        sa.Column("phone", sa.String(), nullable=True, unique=True),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("visit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier_id", UUID, sa.ForeignKey("tiers.id"), nullable=True),
        sa.Column("last_visit_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "point_ledger_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("entry_type", point_entry_type, nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_point_ledger_entries_customer_created",
        "point_ledger_entries",
        ["customer_id", "created_at"],
    )

    op.create_table(
        "tier_history",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_tier_id", UUID, sa.ForeignKey("tiers.id"), nullable=True),
        sa.Column("to_tier_id", UUID, sa.ForeignKey("tiers.id"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "campaigns",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("buy_quantity", sa.Integer(), nullable=True),
        sa.Column("target_product_ids", sa.JSON(), nullable=True),
        sa.Column("discount_type", sa.String(), nullable=True),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_usage_per_customer", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("final_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_method", sa.String(), nullable=False, server_default="cash"),
        sa.Column("status", transaction_status, nullable=False, server_default="COMPLETED"),
        sa.Column("tier_id", UUID, sa.ForeignKey("tiers.id"), nullable=True),
        sa.Column("tier_multiplier", sa.Numeric(4, 2), nullable=False, server_default="1"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_transactions_order_number", "transactions", ["order_number"], unique=True)

    op.create_table(
        "transaction_items",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "transaction_id", UUID, sa.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("product_name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_transaction_items_product_id", "transaction_items", ["product_id"])

    op.create_table(
        "transaction_campaign_usages",
        sa.Column("id", UUID, primary_key=True),
        sa.Column(
            "transaction_id", UUID, sa.ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id"), nullable=False),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("is_stamp_redemption", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )

    op.create_table(
        "rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("point_cost", sa.Integer(), nullable=True),
        sa.Column("validity_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "customer_rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reward_id", UUID, sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column(
            "transaction_id", UUID, sa.ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("source", reward_source, nullable=False, server_default="MANUAL"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_redeemed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_customer_rewards_transaction_id", "customer_rewards", ["transaction_id"])

    op.create_table(
        "push_subscriptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", UUID, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=False, unique=True),
        sa.Column("p256dh_key", sa.String(), nullable=False),
        sa.Column("auth_key", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="GENERAL"),
        sa.Column("target_customer_ids", sa.JSON(), nullable=False),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_results", sa.JSON(), nullable=True),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("notification_logs")
    op.drop_table("push_subscriptions")
    op.drop_index("ix_customer_rewards_transaction_id", table_name="customer_rewards")
    op.drop_table("customer_rewards")
    op.drop_table("rewards")
    op.drop_table("transaction_campaign_usages")
    op.drop_index("ix_transaction_items_product_id", table_name="transaction_items")
    op.drop_table("transaction_items")
    op.drop_index("ix_transactions_order_number", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("campaigns")
    op.drop_table("tier_history")
    op.drop_index("ix_point_ledger_entries_customer_created", table_name="point_ledger_entries")
    op.drop_table("point_ledger_entries")
    op.drop_table("customers")
    op.drop_table("tiers")
    op.drop_index("ix_staff_users_email", table_name="staff_users")
    op.drop_table("staff_users")

    bind = op.get_bind()
    for enum in (reward_source, transaction_status, point_entry_type, staff_role):
        enum.drop(bind, checkfirst=True)
