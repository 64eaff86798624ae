from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from aircrm_api.models import (
    Customer,
    CustomerReward,
    PointEntryType,
    PointLedgerEntry,
    Reward,
    Transaction,
    TransactionCampaignUsage,
    TransactionStatus,
)
from aircrm_api.observability.loyalty import get_loyalty_store
from aircrm_api.services.loyalty import (
    CampaignApplication,
    CancellationOptions,
    InvalidStateError,
    LoyaltyValidationError,
    NotFoundError,
    PointLedgerService,
    RewardService,
    TransactionCancellationService,
    TransactionLine,
    TransactionService,
)
from aircrm_api.services.loyalty.cancellation import DEFAULT_CANCELLATION_REASON


def _line(quantity: int = 1, price: str = "800.00", is_free: bool = False) -> TransactionLine:
    return TransactionLine(
        product_name="Tasting menu",
        product_id="tasting",
        quantity=quantity,
        unit_price=Decimal(price),
        is_free=is_free,
    )


async def _seed(session_factory, make_customer, *, points: int = 100, **customer_kwargs):
    async with session_factory() as session:
        customer = await make_customer(session, **customer_kwargs)
        if points:
            await PointLedgerService(session).append_entry(
                customer.id, amount=points, entry_type=PointEntryType.EARNED, source="SEED"
            )
        await session.commit()
        return customer.id


async def _complete(session_factory, customer_id, order_number: str, **kwargs):
    async with session_factory() as session:
        result = await TransactionService(session).complete_transaction(
            customer_id=customer_id, order_number=order_number, **kwargs
        )
        await session.commit()
        return result.transaction.id


async def _cancel(session_factory, **kwargs):
    async with session_factory() as session:
        result = await TransactionCancellationService(session).cancel_transaction(**kwargs)
        await session.commit()
        return result


@pytest.mark.asyncio
async def test_cancellation_restores_points_and_contribution(session_factory, make_customer) -> None:
    customer_id = await _seed(session_factory, make_customer, points=100)
    transaction_id = await _complete(session_factory, customer_id, "ORD-100", items=[_line()])

    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).points == 180

    result = await _cancel(session_factory, order_number="ORD-100", reason="Guest complaint")

    assert result.points_revoked == 80
    assert result.points_refunded == 0
    assert result.transaction.status == TransactionStatus.CANCELLED
    assert result.transaction.cancellation_reason == "Guest complaint"
    assert "[CANCELLED]" in result.transaction.notes
    assert result.errors == []

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        adjustments = (
            await session.execute(
                select(PointLedgerEntry).where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.entry_type == PointEntryType.ADJUSTED,
                )
            )
        ).scalars().all()

    assert customer.points == 100
    assert customer.total_spent == Decimal("0")
    assert customer.visit_count == 0
    assert len(adjustments) == 1
    assert adjustments[0].amount == -80
    assert adjustments[0].source == "CANCELLATION"
    assert adjustments[0].source_id == str(transaction_id)
    assert get_loyalty_store().snapshot().cancellations == {"cancelled": 1}


@pytest.mark.asyncio
async def test_used_points_are_refunded_before_earned_points_are_revoked(
    session_factory, make_customer
) -> None:
    customer_id = await _seed(session_factory, make_customer, points=50)
    await _complete(session_factory, customer_id, "ORD-101", items=[_line(price="100.00")], points_to_use=50)

    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).points == 10

    result = await _cancel(session_factory, order_number="ORD-101")

    assert result.points_refunded == 50
    assert result.points_revoked == 10
    assert result.transaction.cancellation_reason == DEFAULT_CANCELLATION_REASON

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        sources = (
            await session.execute(
                select(PointLedgerEntry.source, PointLedgerEntry.amount)
                .where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.entry_type == PointEntryType.ADJUSTED,
                )
                .order_by(PointLedgerEntry.created_at)
            )
        ).all()

    assert customer.points == 50
    assert [tuple(row) for row in sources] == [("REFUND", 50), ("CANCELLATION", -10)]


@pytest.mark.asyncio
async def test_second_cancellation_is_rejected(session_factory, make_customer) -> None:
    customer_id = await _seed(session_factory, make_customer)
    transaction_id = await _complete(session_factory, customer_id, "ORD-102", items=[_line()])
    await _cancel(session_factory, transaction_id=transaction_id)

    with pytest.raises(InvalidStateError):
        await _cancel(session_factory, transaction_id=transaction_id)

    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).points == 100
    assert get_loyalty_store().snapshot().cancellations == {"cancelled": 1, "rejected": 1}


@pytest.mark.asyncio
async def test_missing_or_unidentified_transaction(session_factory) -> None:
    with pytest.raises(NotFoundError):
        await _cancel(session_factory, transaction_id=uuid4())
    with pytest.raises(NotFoundError):
        await _cancel(session_factory, order_number="ORD-NOPE")
    with pytest.raises(LoyaltyValidationError):
        await _cancel(session_factory)


@pytest.mark.asyncio
async def test_cancellation_reverses_stamps_usages_and_rewards(
    session_factory, make_customer, make_stamp_campaign
) -> None:
    customer_id = await _seed(session_factory, make_customer, points=0)
    async with session_factory() as session:
        campaign = await make_stamp_campaign(session, buy_quantity=2, target_product_ids=["tasting"])
        session.add_all(
            [
                Reward(name="Free dessert", validity_days=30),
                Reward(name="Welcome drink"),
            ]
        )
        await session.commit()
        campaign_id = campaign.id
        rewards = {
            reward.name: reward.id
            for reward in (await session.execute(select(Reward))).scalars().all()
        }

    await _complete(session_factory, customer_id, "ORD-200", items=[_line(quantity=2, price="10.00")])
    transaction_id = await _complete(
        session_factory,
        customer_id,
        "ORD-201",
        items=[_line(quantity=4, price="10.00"), _line(price="0", is_free=True)],
        campaign_usages=[CampaignApplication(campaign_id=campaign_id, is_stamp_redemption=True)],
    )

    async with session_factory() as session:
        service = RewardService(session)
        kept = await service.grant_reward(rewards["Free dessert"], customer_id, transaction_id=transaction_id)
        redeemed = await service.grant_reward(rewards["Welcome drink"], customer_id, transaction_id=transaction_id)
        await session.commit()
        kept_id, redeemed_id = kept.id, redeemed.id

    async with session_factory() as session:
        await RewardService(session).redeem_reward(redeemed_id)
        await session.commit()

    result = await _cancel(session_factory, transaction_id=transaction_id)

    assert result.stamps_revoked == 2
    assert len(result.campaign_usages_cancelled) == 1
    assert result.campaign_usages_cancelled[0]["campaignId"] == str(campaign_id)
    assert result.campaign_usages_cancelled[0]["isStampRedemption"] is True
    assert result.rewards_revoked == [{"customerRewardId": str(kept_id), "rewardName": "Free dessert"}]
    assert result.errors == ["Reward already redeemed and cannot be revoked: Welcome drink"]

    async with session_factory() as session:
        usages = (
            await session.execute(
                select(TransactionCampaignUsage).where(TransactionCampaignUsage.transaction_id == transaction_id)
            )
        ).scalars().all()
        kept_grant = await session.get(CustomerReward, kept_id)
        redeemed_grant = await session.get(CustomerReward, redeemed_id)

    assert usages == []
    assert kept_grant.revoked_at is not None
    assert redeemed_grant.revoked_at is None
    assert redeemed_grant.is_redeemed is True


@pytest.mark.asyncio
async def test_cancellation_may_downgrade_tier(session_factory, make_customer, standard_tiers) -> None:
    async with session_factory() as session:
        tiers = await standard_tiers(session)
        await session.commit()
        bronze_id, silver_id = tiers["bronze"].id, tiers["silver"].id

    customer_id = await _seed(
        session_factory,
        make_customer,
        points=195,
        total_spent=Decimal("950"),
        visit_count=9,
        tier=tiers["bronze"],
    )
    await _complete(session_factory, customer_id, "ORD-300", items=[_line(price="60.00")])

    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).tier_id == silver_id

    result = await _cancel(session_factory, order_number="ORD-300")

    assert result.tier_downgraded is True
    assert result.tier_change.triggered_by == "TRANSACTION_CANCELLED"
    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).tier_id == bronze_id


@pytest.mark.asyncio
async def test_disabled_options_skip_their_compensation(
    session_factory, make_customer, standard_tiers
) -> None:
    async with session_factory() as session:
        tiers = await standard_tiers(session)
        await session.commit()
        silver_id = tiers["silver"].id

    customer_id = await _seed(
        session_factory,
        make_customer,
        points=195,
        total_spent=Decimal("950"),
        visit_count=9,
        tier=tiers["bronze"],
    )
    await _complete(session_factory, customer_id, "ORD-301", items=[_line(price="60.00")])

    result = await _cancel(
        session_factory,
        order_number="ORD-301",
        options=CancellationOptions(refund_points=False, check_tier_downgrade=False),
    )

    assert result.points_revoked == 0
    assert result.tier_change is None
    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
    assert customer.points == 201
    assert customer.tier_id == silver_id


@pytest.mark.asyncio
async def test_failed_compensation_leaves_no_partial_writes(
    session_factory, make_customer, monkeypatch
) -> None:
    customer_id = await _seed(session_factory, make_customer, points=100)
    transaction_id = await _complete(session_factory, customer_id, "ORD-400", items=[_line()])

    async def broken_revoke(self, transaction, result):
        raise RuntimeError("reward store offline")

    monkeypatch.setattr(TransactionCancellationService, "_revoke_rewards", broken_revoke)

    with pytest.raises(RuntimeError):
        await _cancel(session_factory, transaction_id=transaction_id)

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        transaction = await session.get(Transaction, transaction_id)
        adjustments = (
            await session.execute(
                select(PointLedgerEntry.id).where(PointLedgerEntry.entry_type == PointEntryType.ADJUSTED)
            )
        ).scalars().all()

    assert customer.points == 180
    assert customer.visit_count == 1
    assert transaction.status == TransactionStatus.COMPLETED
    assert adjustments == []
    assert get_loyalty_store().snapshot().cancellations == {"failed": 1}


@pytest.mark.asyncio
async def test_overlapping_cancellations_compensate_once(session_factory, make_customer) -> None:
    customer_id = await _seed(session_factory, make_customer, points=100)
    await _complete(session_factory, customer_id, "ORD-500", items=[_line()])

    class _InterleavingLedger(PointLedgerService):
        """Lets a competing cancellation commit while this one waits for the customer lock."""

        interleaved = False

        async def lock_customer(self, target_id):
            if not self.interleaved:
                self.interleaved = True
                await _cancel(session_factory, order_number="ORD-500")
            return await super().lock_customer(target_id)

    async with session_factory() as session:
        service = TransactionCancellationService(session, ledger=_InterleavingLedger(session))
        with pytest.raises(InvalidStateError):
            await service.cancel_transaction(order_number="ORD-500")

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        revocations = (
            await session.execute(
                select(PointLedgerEntry.id).where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.source == "CANCELLATION",
                )
            )
        ).scalars().all()

    assert customer.points == 100
    assert len(revocations) == 1
    assert get_loyalty_store().snapshot().cancellations == {"cancelled": 1, "rejected": 1}
