"""Observability endpoints for loyalty telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.observability.loyalty import get_loyalty_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_api_access)],
    summary="Loyalty observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Reconciliation, cancellation, tier and push counters since process start."""
    return get_loyalty_store().snapshot().as_dict()
