"""Milestone reward rules and rule-linked grants.

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


reward_trigger = sa.Enum("VISIT_COUNT", "TOTAL_SPENT", "POINTS_MILESTONE", name="reward_trigger")


def upgrade() -> None:
    op.create_table(
        "reward_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "reward_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("trigger_type", reward_trigger, nullable=False),
        sa.Column("trigger_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.add_column(
        "customer_rewards",
        sa.Column(
            "reward_rule_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reward_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_customer_rewards_reward_rule_id", "customer_rewards", ["reward_rule_id"])


def downgrade() -> None:
    op.drop_index("ix_customer_rewards_reward_rule_id", table_name="customer_rewards")
    op.drop_column("customer_rewards", "reward_rule_id")
    op.drop_table("reward_rules")
    reward_trigger.drop(op.get_bind(), checkfirst=True)
