"""API endpoints for push subscriptions and broadcast notifications."""

from __future__ import annotations

from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.push import get_push_backend
from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.services.loyalty import LoyaltyError
from aircrm_api.services.notifications import PushBackend, PushNotificationDispatcher


router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_api_access)],
)


class NotificationSendRequest(BaseModel):
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    type: str = "GENERAL"
    targetCustomerIds: List[UUID] = Field(..., min_length=1)
    data: Optional[dict[str, Any]] = None


class NotificationSendResponse(BaseModel):
    id: UUID
    success: bool = True
    sentCount: int
    failedCount: int
    totalTargets: int
    results: List[dict[str, Any]]


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class SubscriptionRegisterRequest(BaseModel):
    customerId: UUID
    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys


class SubscriptionUnregisterRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class SubscriptionResponse(BaseModel):
    id: UUID
    customerId: UUID
    endpoint: str
    isActive: bool


@router.post("/send", response_model=NotificationSendResponse)
async def send_notification(
    payload: NotificationSendRequest,
    db: AsyncSession = Depends(get_session),
    push_backend: PushBackend = Depends(get_push_backend),
) -> NotificationSendResponse:
    """Push a notification to every active subscription of the target customers."""

    dispatcher = PushNotificationDispatcher(db, backend=push_backend)
    try:
        summary = await dispatcher.send(
            payload.targetCustomerIds,
            title=payload.title,
            body=payload.body,
            notification_type=payload.type,
            data=payload.data,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return NotificationSendResponse(
        id=summary.log_id,
        sentCount=summary.sent_count,
        failedCount=summary.failed_count,
        totalTargets=summary.total_targets,
        results=[result.as_dict() for result in summary.results],
    )


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_subscription(
    payload: SubscriptionRegisterRequest,
    db: AsyncSession = Depends(get_session),
) -> SubscriptionResponse:
    dispatcher = PushNotificationDispatcher(db)
    try:
        subscription = await dispatcher.register_subscription(
            payload.customerId,
            endpoint=payload.endpoint,
            p256dh_key=payload.keys.p256dh,
            auth_key=payload.keys.auth,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return SubscriptionResponse(
        id=subscription.id,
        customerId=subscription.customer_id,
        endpoint=subscription.endpoint,
        isActive=subscription.is_active,
    )


@router.delete("/subscriptions", response_model=SubscriptionResponse)
async def unregister_subscription(
    payload: SubscriptionUnregisterRequest,
    db: AsyncSession = Depends(get_session),
) -> SubscriptionResponse:
    dispatcher = PushNotificationDispatcher(db)
    try:
        subscription = await dispatcher.unregister_subscription(payload.endpoint)
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return SubscriptionResponse(
        id=subscription.id,
        customerId=subscription.customer_id,
        endpoint=subscription.endpoint,
        isActive=subscription.is_active,
    )
