"""Transaction completion: persistence, point crediting, tier upgrade and milestone grants."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable, Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aircrm_api.core.settings import settings
from aircrm_api.models._time import as_utc, utcnow
from aircrm_api.models.loyalty import PointEntryType, Tier
from aircrm_api.models.reward import CustomerReward
from aircrm_api.models.transaction import (
    Campaign,
    Transaction,
    TransactionCampaignUsage,
    TransactionItem,
    TransactionStatus,
)

from .errors import ConflictError, InvalidStateError, LoyaltyValidationError, NotFoundError
from .ledger import PointLedgerService
from .rewards import RewardService
from .stamps import StampService
from .tiers import TierChange, TierService

_ZERO = Decimal("0")


@dataclass
class TransactionLine:
    product_name: str
    quantity: int
    unit_price: Decimal
    product_id: Optional[str] = None
    category: Optional[str] = None
    is_free: bool = False

    @property
    def total_price(self) -> Decimal:
        return _ZERO if self.is_free else Decimal(self.unit_price) * self.quantity


@dataclass
class CampaignApplication:
    campaign_id: UUID
    discount_amount: Decimal = _ZERO
    is_stamp_redemption: bool = False


@dataclass
class CompletionResult:
    transaction: Transaction
    points_balance: int
    tier_change: Optional[TierChange] = None
    milestone_rewards: list[CustomerReward] = field(default_factory=list)


def calculate_points_earned(final_amount: Decimal, multiplier: Decimal) -> int:
    raw = Decimal(final_amount) * Decimal(str(settings.base_point_rate)) * Decimal(multiplier)
    return max(0, int(raw.to_integral_value(rounding=ROUND_FLOOR)))


async def load_transaction(
    db: AsyncSession,
    *,
    transaction_id: UUID | None = None,
    order_number: str | None = None,
    for_update: bool = False,
) -> Transaction:
    """Resolve a transaction by id or order number with items and usages loaded.

    ``for_update`` also takes a row lock on the transaction.
    """

    if transaction_id is None and not order_number:
        raise LoyaltyValidationError("Either transactionId or orderNumber is required")

    stmt = (
        select(Transaction)
        .options(
            selectinload(Transaction.items),
            selectinload(Transaction.campaign_usages).selectinload(TransactionCampaignUsage.campaign),
        )
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    if transaction_id is not None:
        stmt = stmt.where(Transaction.id == transaction_id)
    else:
        stmt = stmt.where(Transaction.order_number == order_number)

    transaction = (await db.execute(stmt)).scalar_one_or_none()
    if transaction is None:
        raise NotFoundError(f"Transaction not found: {transaction_id or order_number}")
    return transaction


class TransactionService:
    """Record completed sales and run their loyalty side effects."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointLedgerService | None = None,
        tiers: TierService | None = None,
        stamps: StampService | None = None,
        rewards: RewardService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointLedgerService(db_session)
        self._tiers = tiers or TierService(db_session)
        self._stamps = stamps or StampService(db_session)
        self._rewards = rewards or RewardService(db_session, ledger=self._ledger)

    async def complete_transaction(
        self,
        *,
        customer_id: UUID,
        order_number: str,
        items: Sequence[TransactionLine],
        points_to_use: int = 0,
        discount_amount: Decimal = _ZERO,
        campaign_usages: Iterable[CampaignApplication] = (),
        payment_method: str = "cash",
        notes: str | None = None,
    ) -> CompletionResult:
        if not items:
            raise LoyaltyValidationError("A transaction requires at least one item")
        if any(line.quantity <= 0 for line in items):
            raise LoyaltyValidationError("Item quantities must be positive")
        if points_to_use < 0 or discount_amount < 0:
            raise LoyaltyValidationError("Points and discounts must not be negative")

        usages = list(campaign_usages)
        try:
            existing = await self._db.execute(
                select(Transaction.id).where(Transaction.order_number == order_number)
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(f"Order number already recorded: {order_number}")

            customer = await self._ledger.lock_customer(customer_id)
            if points_to_use > int(customer.points or 0):
                raise InvalidStateError(
                    f"Insufficient points: requested {points_to_use}, available {customer.points}"
                )
            await self._check_campaigns(customer_id, usages)

            tier = await self._db.get(Tier, customer.tier_id) if customer.tier_id else None
            multiplier = Decimal(tier.point_multiplier) if tier is not None else Decimal("1")

            total_amount = sum((line.total_price for line in items), _ZERO)
            final_amount = max(_ZERO, total_amount - Decimal(discount_amount))
            points_earned = calculate_points_earned(final_amount, multiplier)
            now = utcnow()

            transaction = Transaction(
                order_number=order_number,
                customer_id=customer.id,
                total_amount=total_amount,
                discount_amount=Decimal(discount_amount),
                final_amount=final_amount,
                points_earned=points_earned,
                points_used=points_to_use,
                payment_method=payment_method,
                status=TransactionStatus.COMPLETED,
                tier_id=tier.id if tier is not None else None,
                tier_multiplier=multiplier,
                notes=notes,
                transaction_date=now,
                created_at=now,
                items=[
                    TransactionItem(
                        product_id=line.product_id,
                        product_name=line.product_name,
                        category=line.category,
                        quantity=line.quantity,
                        unit_price=Decimal(line.unit_price),
                        total_price=line.total_price,
                        is_free=line.is_free,
                    )
                    for line in items
                ],
                campaign_usages=[
                    TransactionCampaignUsage(
                        campaign_id=usage.campaign_id,
                        discount_amount=Decimal(usage.discount_amount),
                        is_stamp_redemption=usage.is_stamp_redemption,
                    )
                    for usage in usages
                ],
            )
            self._db.add(transaction)
            await self._db.flush()

            balance = int(customer.points or 0)
            if points_to_use:
                spent = await self._ledger.append_entry(
                    customer.id,
                    amount=-points_to_use,
                    entry_type=PointEntryType.SPENT,
                    source="PURCHASE",
                    source_id=str(transaction.id),
                    description=f"Points used on order {order_number}",
                )
                balance = spent.balance
            if points_earned:
                earned = await self._ledger.append_entry(
                    customer.id,
                    amount=points_earned,
                    entry_type=PointEntryType.EARNED,
                    source="PURCHASE",
                    source_id=str(transaction.id),
                    description=f"Points earned on order {order_number}",
                    expires_at=now + timedelta(days=settings.earned_points_ttl_days),
                )
                balance = earned.balance

            customer.total_spent = Decimal(customer.total_spent or 0) + final_amount
            if final_amount > 0:
                customer.visit_count = int(customer.visit_count or 0) + 1
            customer.last_visit_at = now
            await self._db.flush()

            tier_change = await self._tiers.evaluate_customer(
                customer,
                triggered_by="TRANSACTION_COMPLETED",
                reason=f"Qualified after order {order_number}",
            )
            milestone_rewards = await self._rewards.check_milestone_rewards(
                customer, transaction_id=transaction.id
            )
        except Exception:
            await self._db.rollback()
            raise

        logger.info(
            "Completed transaction",
            transaction_id=str(transaction.id),
            order_number=order_number,
            customer_id=str(customer_id),
            final_amount=str(final_amount),
            points_earned=points_earned,
            points_used=points_to_use,
            milestone_rewards=len(milestone_rewards),
        )
        return CompletionResult(
            transaction=transaction,
            points_balance=balance,
            tier_change=tier_change,
            milestone_rewards=milestone_rewards,
        )

    async def _check_campaigns(self, customer_id: UUID, usages: Sequence[CampaignApplication]) -> None:
        now = utcnow()
        redemptions = Counter(usage.campaign_id for usage in usages if usage.is_stamp_redemption)
        for campaign_id in {usage.campaign_id for usage in usages}:
            campaign = await self._db.get(Campaign, campaign_id)
            if campaign is None:
                raise NotFoundError(f"Campaign not found: {campaign_id}")
            if not campaign.is_active:
                raise InvalidStateError(f"Campaign {campaign.name} is not active")
            if not as_utc(campaign.start_date) <= now <= as_utc(campaign.end_date):
                raise InvalidStateError(f"Campaign {campaign.name} is outside its running window")

            wanted = redemptions.get(campaign_id, 0)
            if not wanted:
                continue
            if campaign.buy_quantity is None:
                raise InvalidStateError(f"Campaign {campaign.name} does not issue stamps")
            progress = await self._stamps.campaign_progress(customer_id, campaign)
            if progress.counts.stamps_available < wanted:
                raise InvalidStateError(
                    f"Insufficient stamps for {campaign.name}: "
                    f"requested {wanted}, available {progress.counts.stamps_available}"
                )


__all__ = [
    "CampaignApplication",
    "CompletionResult",
    "TransactionLine",
    "TransactionService",
    "calculate_points_earned",
    "load_transaction",
]
