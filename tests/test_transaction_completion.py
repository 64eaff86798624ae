from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from aircrm_api.models import Customer, PointEntryType, PointLedgerEntry, Transaction
from aircrm_api.models._time import utcnow
from aircrm_api.services.loyalty import (
    CampaignApplication,
    ConflictError,
    InvalidStateError,
    LoyaltyValidationError,
    NotFoundError,
    PointLedgerService,
    TransactionLine,
    TransactionService,
)
from aircrm_api.services.loyalty.transactions import calculate_points_earned


def _latte(quantity: int = 1, price: str = "91.00", **kwargs) -> TransactionLine:
    return TransactionLine(
        product_name="Latte", product_id="latte", quantity=quantity, unit_price=Decimal(price), **kwargs
    )


async def _customer_with_points(session, make_customer, points: int, **kwargs):
    customer = await make_customer(session, **kwargs)
    if points:
        await PointLedgerService(session).append_entry(
            customer.id, amount=points, entry_type=PointEntryType.EARNED, source="SEED"
        )
    await session.commit()
    return customer


def test_points_are_floored_after_multiplier() -> None:
    assert calculate_points_earned(Decimal("90"), Decimal("1")) == 9
    assert calculate_points_earned(Decimal("90"), Decimal("1.5")) == 13
    assert calculate_points_earned(Decimal("9.99"), Decimal("1")) == 0


@pytest.mark.asyncio
async def test_complete_transaction_records_sale_and_ledger(session_factory, make_customer) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 10)

        result = await TransactionService(session).complete_transaction(
            customer_id=customer.id,
            order_number="ORD-1001",
            items=[_latte()],
            points_to_use=1,
            discount_amount=Decimal("1"),
        )
        await session.commit()

        assert result.transaction.final_amount == Decimal("90")
        assert result.transaction.points_earned == 9
        assert result.transaction.points_used == 1
        assert result.points_balance == 18
        assert result.tier_change is None
        customer_id = customer.id

    async with session_factory() as session:
        stored = await session.get(Customer, customer_id)
        entries = (
            await session.execute(
                select(PointLedgerEntry)
                .where(PointLedgerEntry.customer_id == customer_id, PointLedgerEntry.source == "PURCHASE")
                .order_by(PointLedgerEntry.created_at)
            )
        ).scalars().all()

    assert stored.points == 18
    assert stored.visit_count == 1
    assert stored.total_spent == Decimal("90")
    assert [(entry.entry_type, entry.amount) for entry in entries] == [
        (PointEntryType.SPENT, -1),
        (PointEntryType.EARNED, 9),
    ]
    assert entries[1].expires_at is not None


@pytest.mark.asyncio
async def test_tier_multiplier_applies_to_earned_points(
    session_factory, make_customer, standard_tiers
) -> None:
    async with session_factory() as session:
        tiers = await standard_tiers(session)
        customer = await _customer_with_points(session, make_customer, 0, tier=tiers["silver"])

        result = await TransactionService(session).complete_transaction(
            customer_id=customer.id,
            order_number="ORD-1002",
            items=[_latte(price="90.00")],
        )

        assert result.transaction.points_earned == 13
        assert result.transaction.tier_multiplier == Decimal("1.5")


@pytest.mark.asyncio
async def test_completion_upgrades_tier_when_thresholds_are_met(
    session_factory, make_customer, standard_tiers
) -> None:
    async with session_factory() as session:
        tiers = await standard_tiers(session)
        customer = await _customer_with_points(
            session,
            make_customer,
            195,
            total_spent=Decimal("950"),
            visit_count=9,
            tier=tiers["bronze"],
        )

        result = await TransactionService(session).complete_transaction(
            customer_id=customer.id,
            order_number="ORD-1003",
            items=[_latte(price="60.00")],
        )

        assert result.points_balance == 201
        assert result.tier_change is not None
        assert result.tier_change.direction == "upgrade"
        assert result.tier_change.to_tier.name == "silver"
        assert result.tier_change.triggered_by == "TRANSACTION_COMPLETED"


@pytest.mark.asyncio
async def test_duplicate_order_number_is_a_conflict(session_factory, make_customer) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 0)
        service = TransactionService(session)
        await service.complete_transaction(customer_id=customer.id, order_number="ORD-1", items=[_latte()])
        await session.commit()
        customer_id = customer.id

        with pytest.raises(ConflictError):
            await service.complete_transaction(customer_id=customer_id, order_number="ORD-1", items=[_latte()])

    async with session_factory() as session:
        count = len((await session.execute(select(Transaction.id))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_insufficient_points_are_rejected_without_side_effects(
    session_factory, make_customer
) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 5)
        customer_id = customer.id

        with pytest.raises(InvalidStateError):
            await TransactionService(session).complete_transaction(
                customer_id=customer_id, order_number="ORD-2", items=[_latte()], points_to_use=6
            )

    async with session_factory() as session:
        stored = await session.get(Customer, customer_id)
        transactions = (await session.execute(select(Transaction.id))).scalars().all()
    assert stored.points == 5
    assert transactions == []


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_touching_the_database(
    session_factory, make_customer
) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 0)
        service = TransactionService(session)

        with pytest.raises(LoyaltyValidationError):
            await service.complete_transaction(customer_id=customer.id, order_number="ORD-3", items=[])
        with pytest.raises(LoyaltyValidationError):
            await service.complete_transaction(
                customer_id=customer.id, order_number="ORD-3", items=[_latte(quantity=0)]
            )


@pytest.mark.asyncio
async def test_stamp_redemption_requires_available_stamps(
    session_factory, make_customer, make_stamp_campaign
) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 0)
        campaign = await make_stamp_campaign(session, buy_quantity=5, target_product_ids=["latte"])
        await session.commit()
        customer_id, campaign_id = customer.id, campaign.id

        with pytest.raises(InvalidStateError):
            await TransactionService(session).complete_transaction(
                customer_id=customer_id,
                order_number="ORD-4",
                items=[_latte(price="4.50")],
                campaign_usages=[CampaignApplication(campaign_id=campaign_id, is_stamp_redemption=True)],
            )

    async with session_factory() as session:
        service = TransactionService(session)
        await service.complete_transaction(
            customer_id=customer_id, order_number="ORD-5", items=[_latte(quantity=5, price="4.50")]
        )
        await session.commit()

        redeemed = await service.complete_transaction(
            customer_id=customer_id,
            order_number="ORD-6",
            items=[_latte(price="0", is_free=True)],
            campaign_usages=[CampaignApplication(campaign_id=campaign_id, is_stamp_redemption=True)],
        )

        assert len(redeemed.transaction.campaign_usages) == 1
        assert redeemed.transaction.final_amount == Decimal("0")


@pytest.mark.asyncio
async def test_unknown_campaign_is_not_found(session_factory, make_customer) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 0)

        with pytest.raises(NotFoundError):
            await TransactionService(session).complete_transaction(
                customer_id=customer.id,
                order_number="ORD-7",
                items=[_latte()],
                campaign_usages=[CampaignApplication(campaign_id=uuid4())],
            )


@pytest.mark.asyncio
async def test_campaign_outside_its_window_is_rejected(
    session_factory, make_customer, make_stamp_campaign
) -> None:
    async with session_factory() as session:
        customer = await _customer_with_points(session, make_customer, 0)
        campaign = await make_stamp_campaign(
            session, buy_quantity=1, target_product_ids=["latte"], started_days_ago=60
        )
        campaign.end_date = utcnow() - timedelta(days=1)
        await session.commit()
        customer_id, campaign_id = customer.id, campaign.id

    async with session_factory() as session:
        service = TransactionService(session)
        await service.complete_transaction(
            customer_id=customer_id, order_number="ORD-8", items=[_latte(quantity=3, price="4.50")]
        )
        await session.commit()

        with pytest.raises(InvalidStateError, match="outside its running window"):
            await service.complete_transaction(
                customer_id=customer_id,
                order_number="ORD-9",
                items=[_latte(price="0", is_free=True)],
                campaign_usages=[CampaignApplication(campaign_id=campaign_id, is_stamp_redemption=True)],
            )

    async with session_factory() as session:
        recorded = (
            await session.execute(select(Transaction.order_number).order_by(Transaction.order_number))
        ).scalars().all()
    assert recorded == ["ORD-8"]
