"""Buy-X-get-Y stamp progress derived from purchase history."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Collection, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.core.settings import settings
from aircrm_api.models._time import utcnow
from aircrm_api.models.customer import Customer
from aircrm_api.models.transaction import (
    Campaign,
    Transaction,
    TransactionCampaignUsage,
    TransactionItem,
    TransactionStatus,
)

from .errors import NotFoundError


@dataclass(frozen=True)
class StampCounts:
    buy_quantity: int
    total_purchased: int
    stamps_earned: int
    stamps_used: int
    stamps_available: int
    progress_to_next: int
    remaining_for_next_stamp: int
    max_usage: int
    can_earn_more: bool


@dataclass
class CampaignStampProgress:
    campaign_id: UUID
    campaign_name: str
    counts: StampCounts
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None

    def as_dict(self) -> dict[str, Any]:
        counts = self.counts
        return {
            "campaignId": str(self.campaign_id),
            "campaignName": self.campaign_name,
            "buyQuantity": counts.buy_quantity,
            "totalPurchased": counts.total_purchased,
            "stampsEarned": counts.stamps_earned,
            "stampsUsed": counts.stamps_used,
            "stampsAvailable": counts.stamps_available,
            "progressToNext": counts.progress_to_next,
            "remainingForNextStamp": counts.remaining_for_next_stamp,
            "maxUsage": counts.max_usage,
            "canEarnMore": counts.can_earn_more,
            "discountType": self.discount_type,
            "discountValue": float(self.discount_value) if self.discount_value is not None else None,
        }


@dataclass
class StampSummary:
    customer_id: UUID
    campaigns: list[CampaignStampProgress] = field(default_factory=list)

    @property
    def total_available(self) -> int:
        return sum(item.counts.stamps_available for item in self.campaigns)

    def for_campaign(self, campaign_id: UUID) -> Optional[CampaignStampProgress]:
        return next((item for item in self.campaigns if item.campaign_id == campaign_id), None)


def compute_stamp_counts(
    *,
    buy_quantity: Optional[int],
    total_purchased: int,
    stamps_used: int,
    max_usage: Optional[int] = None,
) -> StampCounts:
    """Stamp arithmetic for one campaign; a zero or missing ``buy_quantity`` counts as 1."""

    per_stamp = buy_quantity if buy_quantity and buy_quantity > 0 else 1
    cap = max_usage or settings.default_max_usage_per_customer

    earned = total_purchased // per_stamp
    progress = total_purchased % per_stamp
    can_earn_more = earned < cap
    return StampCounts(
        buy_quantity=per_stamp,
        total_purchased=total_purchased,
        stamps_earned=earned,
        stamps_used=stamps_used,
        stamps_available=max(0, earned - stamps_used),
        progress_to_next=progress,
        remaining_for_next_stamp=per_stamp - progress if can_earn_more else 0,
        max_usage=cap,
        can_earn_more=can_earn_more,
    )


def _target_products(campaign: Campaign) -> list[str]:
    raw = campaign.target_product_ids
    if not raw:
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    return [str(item) for item in raw]


class StampService:
    """Compute per-campaign stamp state for a customer."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def active_campaigns(self, *, now: datetime | None = None) -> Sequence[Campaign]:
        now = now or utcnow()
        stmt = (
            select(Campaign)
            .where(
                Campaign.is_active.is_(True),
                Campaign.buy_quantity.is_not(None),
                Campaign.start_date <= now,
                Campaign.end_date >= now,
            )
            .order_by(Campaign.created_at.asc(), Campaign.id.asc())
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def customer_progress(
        self,
        customer_id: UUID,
        *,
        now: datetime | None = None,
        exclude_transaction_ids: Collection[UUID] = (),
    ) -> StampSummary:
        if await self._db.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer not found: {customer_id}")

        summary = StampSummary(customer_id=customer_id)
        for campaign in await self.active_campaigns(now=now):
            summary.campaigns.append(
                await self.campaign_progress(
                    customer_id, campaign, exclude_transaction_ids=exclude_transaction_ids
                )
            )
        return summary

    async def campaign_progress(
        self,
        customer_id: UUID,
        campaign: Campaign,
        *,
        exclude_transaction_ids: Collection[UUID] = (),
    ) -> CampaignStampProgress:
        total = await self._total_purchased(customer_id, campaign, exclude_transaction_ids)
        used = await self._stamps_used(customer_id, campaign.id)
        return CampaignStampProgress(
            campaign_id=campaign.id,
            campaign_name=campaign.name,
            counts=compute_stamp_counts(
                buy_quantity=campaign.buy_quantity,
                total_purchased=total,
                stamps_used=used,
                max_usage=campaign.max_usage_per_customer,
            ),
            discount_type=campaign.discount_type,
            discount_value=campaign.discount_value,
        )

    async def _total_purchased(
        self,
        customer_id: UUID,
        campaign: Campaign,
        exclude_transaction_ids: Collection[UUID],
    ) -> int:
        stmt = (
            select(func.coalesce(func.sum(TransactionItem.quantity), 0))
            .join(Transaction, TransactionItem.transaction_id == Transaction.id)
            .where(
                Transaction.customer_id == customer_id,
                Transaction.status == TransactionStatus.COMPLETED,
                Transaction.created_at >= campaign.start_date,
                TransactionItem.is_free.is_(False),
            )
        )
        products = _target_products(campaign)
        if products:
            stmt = stmt.where(TransactionItem.product_id.in_(products))
        if exclude_transaction_ids:
            stmt = stmt.where(Transaction.id.not_in(list(exclude_transaction_ids)))
        return int((await self._db.execute(stmt)).scalar_one())

    async def _stamps_used(self, customer_id: UUID, campaign_id: UUID) -> int:
        stmt = (
            select(func.count(TransactionCampaignUsage.id))
            .join(Transaction, TransactionCampaignUsage.transaction_id == Transaction.id)
            .where(
                TransactionCampaignUsage.campaign_id == campaign_id,
                Transaction.customer_id == customer_id,
            )
        )
        return int((await self._db.execute(stmt)).scalar_one())


__all__ = [
    "CampaignStampProgress",
    "StampCounts",
    "StampService",
    "StampSummary",
    "compute_stamp_counts",
]
