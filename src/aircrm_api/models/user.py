"""Back-office staff identities used by session authentication."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, String, func
from sqlalchemy.dialects.postgresql import UUID

from aircrm_api.db.base import Base


class StaffRole(str, Enum):
    ADMIN = "ADMIN"
    RESTAURANT_ADMIN = "RESTAURANT_ADMIN"
    STAFF = "STAFF"


class StaffUser(Base):
    __tablename__ = "staff_users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    role = Column(SqlEnum(StaffRole, name="staff_role"), nullable=False, default=StaffRole.STAFF)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
