"""Reward catalogue, milestone rules and per-customer grants."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from aircrm_api.db.base import Base
from aircrm_api.models._time import utcnow


class RewardSource(str, Enum):
    MANUAL = "MANUAL"
    CAMPAIGN = "CAMPAIGN"
    MILESTONE = "MILESTONE"
    TIER = "TIER"


class RewardTrigger(str, Enum):
    """Customer aggregate a milestone rule watches."""

    VISIT_COUNT = "VISIT_COUNT"
    TOTAL_SPENT = "TOTAL_SPENT"
    POINTS_MILESTONE = "POINTS_MILESTONE"


class Reward(Base):
    __tablename__ = "rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    point_cost = Column(Integer, nullable=True)
    validity_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    grants = relationship("CustomerReward", back_populates="reward")
    rules = relationship("RewardRule", back_populates="reward")


class RewardRule(Base):
    """Grants ``reward`` once per customer when the watched aggregate reaches ``trigger_value``."""

    __tablename__ = "reward_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    trigger_type = Column(SqlEnum(RewardTrigger, name="reward_trigger"), nullable=False)
    trigger_value = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    reward = relationship("Reward", back_populates="rules")


class CustomerReward(Base):
    """A reward granted to a customer; redeemed grants cannot be revoked."""

    __tablename__ = "customer_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    reward_rule_id = Column(
        UUID(as_uuid=True), ForeignKey("reward_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    source = Column(SqlEnum(RewardSource, name="reward_source"), nullable=False, default=RewardSource.MANUAL)
    reason = Column(Text, nullable=True)
    is_redeemed = Column(Boolean, nullable=False, default=False, server_default="false")
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revocation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    customer = relationship("Customer", back_populates="rewards")
    reward = relationship("Reward", back_populates="grants")
    rule = relationship("RewardRule")
