from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.core.settings import settings
from aircrm_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except Exception as error:
        components["database"] = ComponentStatus(status="error", detail=str(error))
        status = "error"

    for name, enabled, label in (
        ("points_reconciliation", settings.points_reconciliation_worker_enabled, "Points reconciliation"),
        ("points_expiry", settings.points_expiry_worker_enabled, "Points expiry"),
    ):
        worker = getattr(request.app.state, f"{name}_worker", None)
        if enabled and worker is not None:
            running = bool(getattr(worker, "is_running", False))
            components[name] = ComponentStatus(
                status="ready" if running else "starting",
                detail=None if running else f"{label} worker not running",
            )
            if not running and status == "ready":
                status = "degraded"
        else:
            components[name] = ComponentStatus(
                status="disabled",
                detail=f"{label} worker disabled via settings",
            )

    return ReadinessPayload(status=status, components=components)
