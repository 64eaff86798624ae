"""Compensating reversal of a completed transaction."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aircrm_api.models._time import utcnow
from aircrm_api.models.customer import Customer
from aircrm_api.models.loyalty import PointEntryType
from aircrm_api.models.reward import CustomerReward
from aircrm_api.models.transaction import Transaction, TransactionStatus
from aircrm_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .errors import InvalidStateError
from .ledger import PointLedgerService
from .rewards import RewardService
from .stamps import StampService
from .tiers import TierChange, TierService
from .transactions import load_transaction

DEFAULT_CANCELLATION_REASON = "No reason provided"


@dataclass
class CancellationOptions:
    refund_points: bool = True
    cancel_campaign_usage: bool = True
    cancel_stamps: bool = True
    cancel_rewards: bool = True
    check_tier_downgrade: bool = True


@dataclass
class CancellationResult:
    transaction: Transaction
    points_refunded: int = 0
    points_revoked: int = 0
    campaign_usages_cancelled: list[dict[str, Any]] = field(default_factory=list)
    stamps_revoked: int = 0
    rewards_revoked: list[dict[str, Any]] = field(default_factory=list)
    tier_change: Optional[TierChange] = None
    errors: list[str] = field(default_factory=list)

    @property
    def tier_downgraded(self) -> bool:
        return self.tier_change is not None and self.tier_change.direction == "downgrade"


class TransactionCancellationService:
    """Reverse every loyalty side effect of a transaction in one unit of work.

    Only ``COMPLETED -> CANCELLED`` is legal. Any failure after the state checks
    rolls the session back so no partial compensation is ever persisted.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointLedgerService | None = None,
        tiers: TierService | None = None,
        stamps: StampService | None = None,
        rewards: RewardService | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_loyalty_store()
        self._ledger = ledger or PointLedgerService(db_session, observability=self._observability)
        self._tiers = tiers or TierService(db_session, observability=self._observability)
        self._stamps = stamps or StampService(db_session)
        self._rewards = rewards or RewardService(db_session, ledger=self._ledger)

    async def cancel_transaction(
        self,
        *,
        transaction_id: UUID | None = None,
        order_number: str | None = None,
        reason: str | None = None,
        options: CancellationOptions | None = None,
    ) -> CancellationResult:
        options = options or CancellationOptions()
        transaction, customer = await self._lock_cancellable(transaction_id, order_number)

        result = CancellationResult(transaction=transaction)
        try:
            if options.refund_points:
                await self._reverse_points(transaction, result)
            if options.cancel_stamps:
                result.stamps_revoked = await self._count_revoked_stamps(transaction)
            if options.cancel_campaign_usage:
                await self._cancel_campaign_usages(transaction, result)
            if options.cancel_rewards:
                await self._revoke_rewards(transaction, result)

            self._remove_contribution(customer, transaction)
            await self._db.flush()
            if options.cancel_rewards:
                await self._revoke_lapsed_milestones(customer, transaction, result)

            if options.check_tier_downgrade:
                result.tier_change = await self._tiers.evaluate_customer(
                    customer,
                    allow_downgrade=True,
                    triggered_by="TRANSACTION_CANCELLED",
                    reason=f"Transaction cancelled: {transaction.order_number}",
                )

            self._mark_cancelled(transaction, reason)
            await self._db.flush()
        except Exception:
            await self._db.rollback()
            self._observability.record_cancellation("failed")
            logger.exception(
                "Transaction cancellation rolled back",
                transaction_id=str(transaction_id) if transaction_id else None,
                order_number=order_number,
            )
            raise

        self._observability.record_cancellation("cancelled")
        logger.info(
            "Cancelled transaction",
            transaction_id=str(transaction.id),
            order_number=transaction.order_number,
            points_refunded=result.points_refunded,
            points_revoked=result.points_revoked,
            usages_cancelled=len(result.campaign_usages_cancelled),
            stamps_revoked=result.stamps_revoked,
            rewards_revoked=len(result.rewards_revoked),
            tier_downgraded=result.tier_downgraded,
            errors=len(result.errors),
        )
        return result

    async def _lock_cancellable(
        self, transaction_id: UUID | None, order_number: str | None
    ) -> tuple[Transaction, Customer]:
        """Lock the customer, then reload the transaction under its own lock and check its status."""

        try:
            transaction = await load_transaction(
                self._db, transaction_id=transaction_id, order_number=order_number
            )
            customer = await self._ledger.lock_customer(transaction.customer_id)
            transaction = await load_transaction(self._db, transaction_id=transaction.id, for_update=True)
            if transaction.status == TransactionStatus.CANCELLED:
                self._observability.record_cancellation("rejected")
                raise InvalidStateError(f"Transaction {transaction.order_number} is already cancelled")
        except Exception:
            await self._db.rollback()
            raise
        return transaction, customer

    async def _reverse_points(self, transaction: Transaction, result: CancellationResult) -> None:
        # Refund precedes revocation.
        if transaction.points_used:
            await self._ledger.append_entry(
                transaction.customer_id,
                amount=transaction.points_used,
                entry_type=PointEntryType.ADJUSTED,
                source="REFUND",
                source_id=str(transaction.id),
                description=f"Points refunded for cancelled order {transaction.order_number}",
            )
            result.points_refunded = transaction.points_used
        already_expired = await self._ledger.expired_points_for_source(
            transaction.customer_id, str(transaction.id)
        )
        to_revoke = max(0, int(transaction.points_earned or 0) - already_expired)
        if to_revoke:
            await self._ledger.append_entry(
                transaction.customer_id,
                amount=-to_revoke,
                entry_type=PointEntryType.ADJUSTED,
                source="CANCELLATION",
                source_id=str(transaction.id),
                description=f"Points revoked for cancelled order {transaction.order_number}",
            )
            result.points_revoked = to_revoke

    async def _count_revoked_stamps(self, transaction: Transaction) -> int:
        before = await self._stamps.customer_progress(transaction.customer_id)
        after = await self._stamps.customer_progress(
            transaction.customer_id, exclude_transaction_ids={transaction.id}
        )
        revoked = 0
        for campaign in before.campaigns:
            remaining = after.for_campaign(campaign.campaign_id)
            earned_after = remaining.counts.stamps_earned if remaining is not None else 0
            revoked += max(0, campaign.counts.stamps_earned - earned_after)
        return revoked

    async def _cancel_campaign_usages(self, transaction: Transaction, result: CancellationResult) -> None:
        for usage in list(transaction.campaign_usages):
            result.campaign_usages_cancelled.append(
                {
                    "usageId": str(usage.id),
                    "campaignId": str(usage.campaign_id),
                    "campaignName": usage.campaign.name if usage.campaign is not None else None,
                    "isStampRedemption": bool(usage.is_stamp_redemption),
                }
            )
        transaction.campaign_usages.clear()

    async def _revoke_rewards(self, transaction: Transaction, result: CancellationResult) -> None:
        stmt = (
            select(CustomerReward)
            .options(selectinload(CustomerReward.reward))
            .where(
                CustomerReward.transaction_id == transaction.id,
                CustomerReward.revoked_at.is_(None),
            )
        )
        grants = (await self._db.execute(stmt)).scalars().all()
        now = utcnow()
        for grant in grants:
            name = grant.reward.name if grant.reward is not None else str(grant.reward_id)
            if grant.is_redeemed:
                result.errors.append(f"Reward already redeemed and cannot be revoked: {name}")
                logger.warning(
                    "Skipping redeemed reward during cancellation",
                    customer_reward_id=str(grant.id),
                    transaction_id=str(transaction.id),
                )
                continue
            grant.revoked_at = now
            grant.revocation_reason = f"Transaction cancelled: {transaction.order_number}"
            result.rewards_revoked.append({"customerRewardId": str(grant.id), "rewardName": name})

    async def _revoke_lapsed_milestones(
        self, customer: Customer, transaction: Transaction, result: CancellationResult
    ) -> None:
        revoked = await self._rewards.revoke_lapsed_milestones(
            customer,
            reason=f"Milestone lost after cancelling {transaction.order_number}",
            exclude_transaction_id=transaction.id,
        )
        for grant in revoked:
            name = grant.reward.name if grant.reward is not None else str(grant.reward_id)
            result.rewards_revoked.append({"customerRewardId": str(grant.id), "rewardName": name})

    @staticmethod
    def _remove_contribution(customer: Customer, transaction: Transaction) -> None:
        final_amount = Decimal(transaction.final_amount or 0)
        customer.total_spent = max(Decimal("0"), Decimal(customer.total_spent or 0) - final_amount)
        if final_amount > 0:
            customer.visit_count = max(0, int(customer.visit_count or 0) - 1)

    @staticmethod
    def _mark_cancelled(transaction: Transaction, reason: str | None) -> None:
        now = utcnow()
        reason = reason or DEFAULT_CANCELLATION_REASON
        transaction.status = TransactionStatus.CANCELLED
        transaction.cancellation_reason = reason
        transaction.cancelled_at = now
        note = f"[CANCELLED] {now.isoformat()}: {reason}"
        transaction.notes = f"{transaction.notes}\n{note}" if transaction.notes else note


__all__ = [
    "CancellationOptions",
    "CancellationResult",
    "DEFAULT_CANCELLATION_REASON",
    "TransactionCancellationService",
]
