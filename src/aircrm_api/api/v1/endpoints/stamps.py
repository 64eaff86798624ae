"""Stamp progress endpoint consumed by the mobile app."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.services.loyalty import LoyaltyError, StampService


router = APIRouter(prefix="/mobile", tags=["stamps"], dependencies=[Depends(require_api_access)])


class CampaignStampResponse(BaseModel):
    campaignId: UUID
    campaignName: str
    buyQuantity: int
    totalPurchased: int
    stampsEarned: int
    stampsUsed: int
    stampsAvailable: int
    progressToNext: int
    remainingForNextStamp: int
    maxUsage: int
    canEarnMore: bool
    discountType: Optional[str]
    discountValue: Optional[float]


class StampProgressResponse(BaseModel):
    customerId: UUID
    stamps: List[CampaignStampResponse]
    totalActiveStamps: int


@router.get("/stamps", response_model=StampProgressResponse)
async def get_stamp_progress(
    customerId: UUID = Query(...),
    db: AsyncSession = Depends(get_session),
) -> StampProgressResponse:
    try:
        summary = await StampService(db).customer_progress(customerId)
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    return StampProgressResponse(
        customerId=summary.customer_id,
        stamps=[CampaignStampResponse(**item.as_dict()) for item in summary.campaigns],
        totalActiveStamps=summary.total_available,
    )
