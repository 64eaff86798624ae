"""API endpoints for tier configuration and customer tier progress."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.models.loyalty import Tier
from aircrm_api.services.loyalty import LoyaltyError, TierService


router = APIRouter(tags=["tiers"], dependencies=[Depends(require_api_access)])


class TierCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    displayName: str = Field(..., min_length=1)
    level: int = Field(..., ge=0)
    description: Optional[str] = None
    minTotalSpent: Optional[Decimal] = Field(None, ge=0)
    minVisitCount: Optional[int] = Field(None, ge=0)
    minPoints: Optional[int] = Field(None, ge=0)
    pointMultiplier: Decimal = Field(Decimal("1"), gt=0)
    discountPercent: Optional[Decimal] = Field(None, ge=0, le=100)
    isActive: bool = True


class TierResponse(BaseModel):
    id: UUID
    name: str
    displayName: str
    description: Optional[str]
    level: int
    minTotalSpent: Optional[float]
    minVisitCount: Optional[int]
    minPoints: Optional[int]
    pointMultiplier: float
    discountPercent: Optional[float]
    isActive: bool


class TierRequirementResponse(BaseModel):
    dimension: str
    current: float
    target: float
    progress: float


class TierProgressResponse(BaseModel):
    customerId: UUID
    currentTier: Optional[TierResponse]
    nextTier: Optional[TierResponse]
    requirements: List[TierRequirementResponse]
    overallProgress: float


@router.get("/tiers", response_model=List[TierResponse])
async def list_tiers(
    includeInactive: bool = Query(False),
    db: AsyncSession = Depends(get_session),
) -> List[TierResponse]:
    tiers = await TierService(db).list_tiers(include_inactive=includeInactive)
    return [_serialize_tier(tier) for tier in tiers]


@router.post("/tiers", response_model=TierResponse, status_code=status.HTTP_201_CREATED)
async def create_tier(
    payload: TierCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> TierResponse:
    """Create a tier after validating level, name, and threshold ordering."""

    try:
        tier = await TierService(db).create_tier(
            name=payload.name,
            display_name=payload.displayName,
            level=payload.level,
            description=payload.description,
            min_total_spent=payload.minTotalSpent,
            min_visit_count=payload.minVisitCount,
            min_points=payload.minPoints,
            point_multiplier=payload.pointMultiplier,
            discount_percent=payload.discountPercent,
            is_active=payload.isActive,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return _serialize_tier(tier)


@router.get("/customers/{customer_id}/tier", response_model=TierProgressResponse)
async def get_customer_tier_progress(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> TierProgressResponse:
    try:
        progress = await TierService(db).tier_progress(customer_id)
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    return TierProgressResponse(
        customerId=progress.customer_id,
        currentTier=_serialize_tier(progress.current_tier) if progress.current_tier else None,
        nextTier=_serialize_tier(progress.next_tier) if progress.next_tier else None,
        requirements=[
            TierRequirementResponse(
                dimension=item.dimension,
                current=item.current,
                target=item.target,
                progress=round(item.progress, 2),
            )
            for item in progress.requirements
        ],
        overallProgress=round(progress.overall_progress, 2),
    )


def _serialize_tier(tier: Tier) -> TierResponse:
    return TierResponse(
        id=tier.id,
        name=tier.name,
        displayName=tier.display_name,
        description=tier.description,
        level=tier.level,
        minTotalSpent=float(tier.min_total_spent) if tier.min_total_spent is not None else None,
        minVisitCount=tier.min_visit_count,
        minPoints=tier.min_points,
        pointMultiplier=float(tier.point_multiplier or 1),
        discountPercent=float(tier.discount_percent) if tier.discount_percent is not None else None,
        isActive=bool(tier.is_active),
    )
