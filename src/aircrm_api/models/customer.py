"""Loyalty customers and their cached aggregates."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from aircrm_api.db.base import Base


class Customer(Base):
    """Customer with cached point balance and purchase aggregates.

    ``points`` is a cache of the point ledger replay; the ledger is authoritative.
    """

    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    phone = Column(String, nullable=True, unique=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    visit_count = Column(Integer, nullable=False, default=0, server_default="0")
    tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=True)
    last_visit_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tier = relationship("Tier", back_populates="customers")
    ledger_entries = relationship(
        "PointLedgerEntry", back_populates="customer", cascade="all, delete-orphan"
    )
    transactions = relationship("Transaction", back_populates="customer")
    rewards = relationship("CustomerReward", back_populates="customer", cascade="all, delete-orphan")
    push_subscriptions = relationship(
        "PushSubscription", back_populates="customer", cascade="all, delete-orphan"
    )
