"""Point ledger and tier domain models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
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


class PointEntryType(str, Enum):
    """Kinds of point movement recorded on the ledger."""

    EARNED = "EARNED"
    SPENT = "SPENT"
    EXPIRED = "EXPIRED"
    ADJUSTED = "ADJUSTED"


class PointLedgerEntry(Base):
    """Immutable signed point movement with a running balance snapshot."""

    __tablename__ = "point_ledger_entries"
    __table_args__ = (
        Index("ix_point_ledger_entries_customer_created", "customer_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    amount = Column(Integer, nullable=False)
    entry_type = Column(SqlEnum(PointEntryType, name="point_entry_type"), nullable=False)
    source = Column(String, nullable=False)
    source_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    balance = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    customer = relationship("Customer", back_populates="ledger_entries")


class Tier(Base):
    """Loyalty tier; a null threshold is satisfied by every customer."""

    __tablename__ = "tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    level = Column(Integer, nullable=False, unique=True)
    min_total_spent = Column(Numeric(12, 2), nullable=True)
    min_visit_count = Column(Integer, nullable=True)
    min_points = Column(Integer, nullable=True)
    point_multiplier = Column(Numeric(4, 2), nullable=False, default=1, server_default="1")
    discount_percent = Column(Numeric(5, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customers = relationship("Customer", back_populates="tier")


class TierHistory(Base):
    __tablename__ = "tier_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    from_tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=True)
    to_tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=True)
    reason = Column(Text, nullable=True)
    triggered_by = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    from_tier = relationship("Tier", foreign_keys=[from_tier_id])
    to_tier = relationship("Tier", foreign_keys=[to_tier_id])
