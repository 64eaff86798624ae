"""Authentication boundary shared by every loyalty endpoint."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.core.settings import settings
from aircrm_api.db.session import get_session
from aircrm_api.models.user import StaffUser


@dataclass(slots=True)
class ApiPrincipal:
    kind: str
    user: StaffUser | None = None


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def require_api_access(
    authorization: str | None = Header(None),
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> ApiPrincipal:
    """Accept the static integration token or a forwarded staff session."""

    token = _bearer_token(authorization)
    if token and settings.api_bearer_token and secrets.compare_digest(token, settings.api_bearer_token):
        return ApiPrincipal(kind="token")

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing credentials",
        )

    try:
        user_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    stmt = select(StaffUser).where(StaffUser.id == user_id, StaffUser.is_active.is_(True))
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session user not found",
        )
    return ApiPrincipal(kind="session", user=user)
