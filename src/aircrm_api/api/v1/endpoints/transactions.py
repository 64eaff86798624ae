"""API endpoints for completing and cancelling sales transactions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.push import get_push_backend
from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.models.transaction import Transaction, TransactionStatus
from aircrm_api.services.loyalty import (
    CampaignApplication,
    CancellationOptions,
    LoyaltyError,
    TierChange,
    TransactionCancellationService,
    TransactionLine,
    TransactionService,
)
from aircrm_api.services.notifications import PushBackend, PushNotificationDispatcher


router = APIRouter(
    prefix="/transactions",
    tags=["transactions"],
    dependencies=[Depends(require_api_access)],
)


class TransactionItemRequest(BaseModel):
    productName: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    unitPrice: Decimal = Field(..., ge=0)
    productId: Optional[str] = None
    category: Optional[str] = None
    isFree: bool = False


class CampaignUsageRequest(BaseModel):
    campaignId: UUID
    discountAmount: Decimal = Field(Decimal("0"), ge=0)
    isStampRedemption: bool = False


class TransactionCompleteRequest(BaseModel):
    customerId: UUID
    orderNumber: str = Field(..., min_length=1)
    items: List[TransactionItemRequest] = Field(..., min_length=1)
    pointsToUse: int = Field(0, ge=0)
    discountAmount: Decimal = Field(Decimal("0"), ge=0)
    campaignUsages: List[CampaignUsageRequest] = Field(default_factory=list)
    paymentMethod: str = "cash"
    notes: Optional[str] = None


class TransactionCancelRequest(BaseModel):
    transactionId: Optional[UUID] = None
    orderNumber: Optional[str] = None
    reason: Optional[str] = None
    refundPoints: bool = True
    cancelCampaignUsage: bool = True
    cancelStamps: bool = True
    cancelRewards: bool = True
    checkTierDowngrade: bool = True

    @model_validator(mode="after")
    def validate_reference(self) -> "TransactionCancelRequest":
        if self.transactionId is None and not self.orderNumber:
            raise ValueError("transactionId or orderNumber must be provided")
        return self


class TransactionItemResponse(BaseModel):
    productId: Optional[str]
    productName: str
    category: Optional[str]
    quantity: int
    unitPrice: float
    totalPrice: float
    isFree: bool


class TransactionResponse(BaseModel):
    id: UUID
    orderNumber: str
    customerId: UUID
    totalAmount: float
    discountAmount: float
    finalAmount: float
    pointsEarned: int
    pointsUsed: int
    paymentMethod: str
    status: TransactionStatus
    tierMultiplier: float
    items: List[TransactionItemResponse]
    notes: Optional[str]
    cancellationReason: Optional[str]
    cancelledAt: Optional[datetime]
    createdAt: datetime


class TierChangeResponse(BaseModel):
    fromTier: Optional[str]
    toTier: str
    direction: str
    triggeredBy: str


class MilestoneRewardResponse(BaseModel):
    customerRewardId: UUID
    rewardId: UUID
    rewardName: str
    reason: Optional[str]


class TransactionCompleteResponse(BaseModel):
    transaction: TransactionResponse
    pointsBalance: int
    tierChange: Optional[TierChangeResponse] = None
    milestoneRewards: List[MilestoneRewardResponse] = Field(default_factory=list)


class TransactionCancelResponse(BaseModel):
    success: bool = True
    transaction: TransactionResponse
    pointsRefunded: int
    pointsRevoked: int
    campaignUsagesCancelled: List[dict[str, Any]]
    stampsRevoked: int
    rewardsRevoked: List[dict[str, Any]]
    tierDowngraded: bool
    tierChange: Optional[TierChangeResponse] = None
    errors: List[str]


@router.post(
    "/complete",
    response_model=TransactionCompleteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def complete_transaction(
    payload: TransactionCompleteRequest,
    db: AsyncSession = Depends(get_session),
    push_backend: PushBackend = Depends(get_push_backend),
) -> TransactionCompleteResponse:
    """Record a completed sale, credit points, and evaluate tier upgrades."""

    service = TransactionService(db)
    try:
        result = await service.complete_transaction(
            customer_id=payload.customerId,
            order_number=payload.orderNumber,
            items=[
                TransactionLine(
                    product_name=item.productName,
                    quantity=item.quantity,
                    unit_price=item.unitPrice,
                    product_id=item.productId,
                    category=item.category,
                    is_free=item.isFree,
                )
                for item in payload.items
            ],
            points_to_use=payload.pointsToUse,
            discount_amount=payload.discountAmount,
            campaign_usages=[
                CampaignApplication(
                    campaign_id=usage.campaignId,
                    discount_amount=usage.discountAmount,
                    is_stamp_redemption=usage.isStampRedemption,
                )
                for usage in payload.campaignUsages
            ],
            payment_method=payload.paymentMethod,
            notes=payload.notes,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()

    response = TransactionCompleteResponse(
        transaction=serialize_transaction(result.transaction),
        pointsBalance=result.points_balance,
        tierChange=_serialize_tier_change(result.tier_change),
        milestoneRewards=[
            MilestoneRewardResponse(
                customerRewardId=grant.id,
                rewardId=grant.reward_id,
                rewardName=grant.reward.name,
                reason=grant.reason,
            )
            for grant in result.milestone_rewards
        ],
    )
    if result.tier_change is not None:
        await PushNotificationDispatcher(db, backend=push_backend).send_tier_change(result.tier_change)
    return response


@router.post("/cancel", response_model=TransactionCancelResponse)
async def cancel_transaction(
    payload: TransactionCancelRequest,
    db: AsyncSession = Depends(get_session),
    push_backend: PushBackend = Depends(get_push_backend),
) -> TransactionCancelResponse:
    """Cancel a completed transaction and reverse its loyalty side effects."""

    service = TransactionCancellationService(db)
    try:
        result = await service.cancel_transaction(
            transaction_id=payload.transactionId,
            order_number=payload.orderNumber,
            reason=payload.reason,
            options=CancellationOptions(
                refund_points=payload.refundPoints,
                cancel_campaign_usage=payload.cancelCampaignUsage,
                cancel_stamps=payload.cancelStamps,
                cancel_rewards=payload.cancelRewards,
                check_tier_downgrade=payload.checkTierDowngrade,
            ),
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()

    response = TransactionCancelResponse(
        transaction=serialize_transaction(result.transaction),
        pointsRefunded=result.points_refunded,
        pointsRevoked=result.points_revoked,
        campaignUsagesCancelled=result.campaign_usages_cancelled,
        stampsRevoked=result.stamps_revoked,
        rewardsRevoked=result.rewards_revoked,
        tierDowngraded=result.tier_downgraded,
        tierChange=_serialize_tier_change(result.tier_change),
        errors=result.errors,
    )
    if result.tier_change is not None:
        await PushNotificationDispatcher(db, backend=push_backend).send_tier_change(result.tier_change)
    return response


def serialize_transaction(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        orderNumber=transaction.order_number,
        customerId=transaction.customer_id,
        totalAmount=float(transaction.total_amount or 0),
        discountAmount=float(transaction.discount_amount or 0),
        finalAmount=float(transaction.final_amount or 0),
        pointsEarned=transaction.points_earned,
        pointsUsed=transaction.points_used,
        paymentMethod=transaction.payment_method,
        status=transaction.status,
        tierMultiplier=float(transaction.tier_multiplier or 1),
        items=[
            TransactionItemResponse(
                productId=item.product_id,
                productName=item.product_name,
                category=item.category,
                quantity=item.quantity,
                unitPrice=float(item.unit_price or 0),
                totalPrice=float(item.total_price or 0),
                isFree=bool(item.is_free),
            )
            for item in transaction.items
        ],
        notes=transaction.notes,
        cancellationReason=transaction.cancellation_reason,
        cancelledAt=transaction.cancelled_at,
        createdAt=transaction.created_at,
    )


def _serialize_tier_change(change: TierChange | None) -> TierChangeResponse | None:
    if change is None:
        return None
    return TierChangeResponse(**change.as_dict())
