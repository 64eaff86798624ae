"""Reward grants, milestone rules and redemption."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aircrm_api.models._time import as_utc, utcnow
from aircrm_api.models.customer import Customer
from aircrm_api.models.loyalty import PointEntryType
from aircrm_api.models.reward import CustomerReward, Reward, RewardRule, RewardSource, RewardTrigger
from aircrm_api.models.transaction import Transaction

from .errors import InvalidStateError, LoyaltyValidationError, NotFoundError
from .ledger import PointLedgerService
from .tiers import CustomerStats

# Milestones re-checked when a cancellation lowers the customer's aggregates.
REVOCABLE_TRIGGERS = (RewardTrigger.VISIT_COUNT, RewardTrigger.TOTAL_SPENT)


def milestone_metric(trigger: RewardTrigger, stats: CustomerStats) -> Decimal:
    if trigger == RewardTrigger.VISIT_COUNT:
        return Decimal(stats.visit_count)
    if trigger == RewardTrigger.TOTAL_SPENT:
        return stats.total_spent
    return Decimal(stats.points)


def milestone_reached(rule: RewardRule, stats: CustomerStats) -> bool:
    return milestone_metric(RewardTrigger(rule.trigger_type), stats) >= Decimal(rule.trigger_value)


@dataclass
class RedemptionResult:
    grant: CustomerReward
    points_spent: int
    points_balance: int


class RewardService:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointLedgerService | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointLedgerService(db_session)

    async def grant_reward(
        self,
        reward_id: UUID,
        customer_id: UUID,
        *,
        transaction_id: UUID | None = None,
        source: RewardSource = RewardSource.MANUAL,
        reason: str | None = None,
        reward_rule_id: UUID | None = None,
    ) -> CustomerReward:
        """Grant ``reward_id`` to a customer, optionally tied to the originating transaction."""

        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            raise NotFoundError(f"Reward not found: {reward_id}")
        if not reward.is_active:
            raise InvalidStateError(f"Reward {reward.name} is not active")

        if await self._db.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer not found: {customer_id}")

        if transaction_id is not None:
            transaction = await self._db.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction not found: {transaction_id}")
            if transaction.customer_id != customer_id:
                raise LoyaltyValidationError("Transaction does not belong to this customer")

        now = utcnow()
        grant = CustomerReward(
            customer_id=customer_id,
            reward_id=reward.id,
            transaction_id=transaction_id,
            reward_rule_id=reward_rule_id,
            source=source,
            reason=reason,
            expires_at=now + timedelta(days=reward.validity_days) if reward.validity_days else None,
            created_at=now,
        )
        self._db.add(grant)
        await self._db.flush()
        await self._db.refresh(grant, attribute_names=["reward"])

        logger.info(
            "Granted reward",
            reward_id=str(reward.id),
            customer_id=str(customer_id),
            source=source.value,
            transaction_id=str(transaction_id) if transaction_id else None,
        )
        return grant

    async def list_customer_rewards(self, customer_id: UUID) -> Sequence[CustomerReward]:
        if await self._db.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer not found: {customer_id}")
        stmt = (
            select(CustomerReward)
            .options(selectinload(CustomerReward.reward))
            .where(CustomerReward.customer_id == customer_id, CustomerReward.revoked_at.is_(None))
            .order_by(CustomerReward.created_at.desc())
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def create_rule(
        self,
        reward_id: UUID,
        *,
        trigger_type: RewardTrigger,
        trigger_value: Decimal,
        is_active: bool = True,
    ) -> RewardRule:
        if Decimal(trigger_value) <= 0:
            raise LoyaltyValidationError("Milestone trigger values must be positive")
        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            raise NotFoundError(f"Reward not found: {reward_id}")

        rule = RewardRule(
            reward_id=reward.id,
            trigger_type=trigger_type,
            trigger_value=Decimal(trigger_value),
            is_active=is_active,
        )
        self._db.add(rule)
        await self._db.flush()
        await self._db.refresh(rule, attribute_names=["reward"])
        logger.info(
            "Created reward rule",
            reward_id=str(reward.id),
            trigger_type=trigger_type.value,
            trigger_value=str(trigger_value),
        )
        return rule

    async def list_rules(self, *, include_inactive: bool = False) -> Sequence[RewardRule]:
        stmt = select(RewardRule).options(selectinload(RewardRule.reward)).order_by(
            RewardRule.trigger_type, RewardRule.trigger_value
        )
        if not include_inactive:
            stmt = stmt.where(RewardRule.is_active.is_(True))
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def check_milestone_rewards(
        self,
        customer: Customer,
        *,
        transaction_id: UUID | None = None,
    ) -> list[CustomerReward]:
        """Grant every active milestone the customer has reached and does not already hold.

        A rule is held while an unrevoked grant for it exists, so a milestone is
        granted again only after a cancellation has taken it back.
        """

        stmt = (
            select(RewardRule)
            .join(Reward, Reward.id == RewardRule.reward_id)
            .where(RewardRule.is_active.is_(True), Reward.is_active.is_(True))
            .order_by(RewardRule.trigger_type, RewardRule.trigger_value)
        )
        rules = (await self._db.execute(stmt)).scalars().all()
        stats = CustomerStats.of(customer)
        candidates = [rule for rule in rules if milestone_reached(rule, stats)]
        if not candidates:
            return []

        held = await self._db.execute(
            select(CustomerReward.reward_rule_id).where(
                CustomerReward.customer_id == customer.id,
                CustomerReward.reward_rule_id.in_([rule.id for rule in candidates]),
                CustomerReward.revoked_at.is_(None),
            )
        )
        held_rule_ids = set(held.scalars().all())

        granted: list[CustomerReward] = []
        for rule in candidates:
            if rule.id in held_rule_ids:
                continue
            trigger = RewardTrigger(rule.trigger_type)
            grant = await self.grant_reward(
                rule.reward_id,
                customer.id,
                transaction_id=transaction_id,
                source=RewardSource.MILESTONE,
                reason=f"Milestone reached: {trigger.value} {rule.trigger_value}",
                reward_rule_id=rule.id,
            )
            granted.append(grant)
        return granted

    async def revoke_lapsed_milestones(
        self,
        customer: Customer,
        *,
        reason: str,
        exclude_transaction_id: UUID | None = None,
    ) -> list[CustomerReward]:
        """Revoke unredeemed milestone grants whose threshold the customer no longer meets."""

        stmt = (
            select(CustomerReward)
            .join(RewardRule, RewardRule.id == CustomerReward.reward_rule_id)
            .options(selectinload(CustomerReward.reward), selectinload(CustomerReward.rule))
            .where(
                CustomerReward.customer_id == customer.id,
                CustomerReward.source == RewardSource.MILESTONE,
                CustomerReward.revoked_at.is_(None),
                CustomerReward.is_redeemed.is_(False),
                RewardRule.trigger_type.in_(REVOCABLE_TRIGGERS),
            )
        )
        if exclude_transaction_id is not None:
            stmt = stmt.where(
                or_(
                    CustomerReward.transaction_id.is_(None),
                    CustomerReward.transaction_id != exclude_transaction_id,
                )
            )
        grants = (await self._db.execute(stmt)).scalars().all()

        stats = CustomerStats.of(customer)
        now = utcnow()
        revoked: list[CustomerReward] = []
        for grant in grants:
            if milestone_reached(grant.rule, stats):
                continue
            grant.revoked_at = now
            grant.revocation_reason = reason
            revoked.append(grant)
        if revoked:
            await self._db.flush()
            logger.info(
                "Revoked lapsed milestone rewards",
                customer_id=str(customer.id),
                count=len(revoked),
            )
        return revoked

    async def redeem_reward(self, customer_reward_id: UUID) -> RedemptionResult:
        """Redeem a grant, charging the reward's point cost to the ledger."""

        try:
            grant = (
                await self._db.execute(
                    select(CustomerReward)
                    .options(selectinload(CustomerReward.reward))
                    .where(CustomerReward.id == customer_reward_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if grant is None:
                raise NotFoundError(f"Customer reward not found: {customer_reward_id}")

            customer = await self._ledger.lock_customer(grant.customer_id)
            now = utcnow()
            if grant.revoked_at is not None:
                raise InvalidStateError("Reward grant has been revoked")
            if grant.is_redeemed:
                raise InvalidStateError("Reward grant is already redeemed")
            if grant.expires_at is not None and as_utc(grant.expires_at) <= now:
                raise InvalidStateError("Reward grant has expired")

            cost = int(grant.reward.point_cost or 0)
            balance = int(customer.points or 0)
            if cost > balance:
                raise InvalidStateError(f"Insufficient points: reward costs {cost}, available {balance}")
            if cost:
                spent = await self._ledger.append_entry(
                    customer.id,
                    amount=-cost,
                    entry_type=PointEntryType.SPENT,
                    source="REWARD",
                    source_id=str(grant.id),
                    description=f"Redeemed reward {grant.reward.name}",
                )
                balance = spent.balance

            grant.is_redeemed = True
            grant.redeemed_at = now
            await self._db.flush()
        except Exception:
            await self._db.rollback()
            raise

        logger.info(
            "Redeemed reward",
            customer_reward_id=str(grant.id),
            customer_id=str(grant.customer_id),
            points_spent=cost,
        )
        return RedemptionResult(grant=grant, points_spent=cost, points_balance=balance)


__all__ = [
    "RedemptionResult",
    "RewardService",
    "milestone_reached",
]
