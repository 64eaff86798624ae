"""API endpoints for reward grants, milestone rules and redemption."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.models.reward import CustomerReward, RewardRule, RewardSource, RewardTrigger
from aircrm_api.services.loyalty import LoyaltyError, RewardService


router = APIRouter(tags=["rewards"], dependencies=[Depends(require_api_access)])


class RewardGrantRequest(BaseModel):
    customerId: UUID
    transactionId: Optional[UUID] = None
    source: RewardSource = RewardSource.MANUAL
    reason: Optional[str] = None


class CustomerRewardResponse(BaseModel):
    id: UUID
    rewardId: UUID
    rewardName: str
    customerId: UUID
    transactionId: Optional[UUID]
    rewardRuleId: Optional[UUID] = None
    source: RewardSource
    reason: Optional[str]
    isRedeemed: bool
    redeemedAt: Optional[datetime] = None
    expiresAt: Optional[datetime]
    createdAt: datetime


class RewardRedemptionResponse(BaseModel):
    customerReward: CustomerRewardResponse
    pointsSpent: int
    pointsBalance: int


class RewardRuleRequest(BaseModel):
    rewardId: UUID
    triggerType: RewardTrigger
    triggerValue: Decimal = Field(..., gt=0)
    isActive: bool = True


class RewardRuleResponse(BaseModel):
    id: UUID
    rewardId: UUID
    rewardName: str
    triggerType: RewardTrigger
    triggerValue: float
    isActive: bool


@router.post(
    "/rewards/{reward_id}/give",
    response_model=CustomerRewardResponse,
    status_code=status.HTTP_201_CREATED,
)
async def give_reward(
    reward_id: UUID,
    payload: RewardGrantRequest,
    db: AsyncSession = Depends(get_session),
) -> CustomerRewardResponse:
    try:
        grant = await RewardService(db).grant_reward(
            reward_id,
            payload.customerId,
            transaction_id=payload.transactionId,
            source=payload.source,
            reason=payload.reason,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return serialize_grant(grant)


@router.get("/customers/{customer_id}/rewards", response_model=List[CustomerRewardResponse])
async def list_customer_rewards(
    customer_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[CustomerRewardResponse]:
    """List a customer's unrevoked reward grants, newest first."""

    try:
        grants = await RewardService(db).list_customer_rewards(customer_id)
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    return [serialize_grant(grant) for grant in grants]


@router.post(
    "/customer-rewards/{customer_reward_id}/redeem",
    response_model=RewardRedemptionResponse,
)
async def redeem_customer_reward(
    customer_reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardRedemptionResponse:
    """Redeem a granted reward and charge its point cost."""

    try:
        result = await RewardService(db).redeem_reward(customer_reward_id)
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return RewardRedemptionResponse(
        customerReward=serialize_grant(result.grant),
        pointsSpent=result.points_spent,
        pointsBalance=result.points_balance,
    )


@router.get("/reward-rules", response_model=List[RewardRuleResponse])
async def list_reward_rules(
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: AsyncSession = Depends(get_session),
) -> List[RewardRuleResponse]:
    rules = await RewardService(db).list_rules(include_inactive=include_inactive)
    return [_serialize_rule(rule) for rule in rules]


@router.post("/reward-rules", response_model=RewardRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_reward_rule(
    payload: RewardRuleRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardRuleResponse:
    try:
        rule = await RewardService(db).create_rule(
            payload.rewardId,
            trigger_type=payload.triggerType,
            trigger_value=payload.triggerValue,
            is_active=payload.isActive,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return _serialize_rule(rule)


def serialize_grant(grant: CustomerReward) -> CustomerRewardResponse:
    return CustomerRewardResponse(
        id=grant.id,
        rewardId=grant.reward_id,
        rewardName=grant.reward.name,
        customerId=grant.customer_id,
        transactionId=grant.transaction_id,
        rewardRuleId=grant.reward_rule_id,
        source=grant.source,
        reason=grant.reason,
        isRedeemed=bool(grant.is_redeemed),
        redeemedAt=grant.redeemed_at,
        expiresAt=grant.expires_at,
        createdAt=grant.created_at,
    )


def _serialize_rule(rule: RewardRule) -> RewardRuleResponse:
    return RewardRuleResponse(
        id=rule.id,
        rewardId=rule.reward_id,
        rewardName=rule.reward.name,
        triggerType=rule.trigger_type,
        triggerValue=float(rule.trigger_value),
        isActive=bool(rule.is_active),
    )
