from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from aircrm_api.models import PointEntryType
from aircrm_api.services.loyalty import PointLedgerService
from aircrm_api.services.notifications import PushNotificationDispatcher


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _order(customer_id: str, order_number: str, *, price: str = "91.00", **extra) -> dict:
    return {
        "customerId": customer_id,
        "orderNumber": order_number,
        "items": [{"productName": "Bibimbap", "productId": "bibimbap", "quantity": 1, "unitPrice": price}],
        **extra,
    }


@pytest.mark.asyncio
async def test_complete_and_cancel_round_trip(app_with_db, auth_headers, push_backend, make_customer) -> None:
    app, session_factory = app_with_db

    async with session_factory() as session:
        customer = await make_customer(session)
        await PointLedgerService(session).append_entry(
            customer.id, amount=10, entry_type=PointEntryType.EARNED, source="SEED"
        )
        await session.commit()
        customer_id = str(customer.id)

    async with _client(app) as client:
        completed = await client.post(
            "/api/v1/transactions/complete",
            json=_order(customer_id, "ORD-9001", pointsToUse=1, discountAmount="1"),
            headers=auth_headers,
        )
        duplicate = await client.post(
            "/api/v1/transactions/complete", json=_order(customer_id, "ORD-9001"), headers=auth_headers
        )
        cancelled = await client.post(
            "/api/v1/transactions/cancel",
            json={"orderNumber": "ORD-9001", "reason": "Kitchen closed"},
            headers=auth_headers,
        )
        cancelled_again = await client.post(
            "/api/v1/transactions/cancel", json={"orderNumber": "ORD-9001"}, headers=auth_headers
        )
        no_reference = await client.post("/api/v1/transactions/cancel", json={}, headers=auth_headers)

    assert completed.status_code == 201
    body = completed.json()
    assert body["transaction"]["finalAmount"] == 90.0
    assert body["transaction"]["pointsEarned"] == 9
    assert body["pointsBalance"] == 18
    assert body["tierChange"] is None
    assert body["milestoneRewards"] == []

    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["error"] == "conflict"

    assert cancelled.status_code == 200
    result = cancelled.json()
    assert result["success"] is True
    assert result["pointsRefunded"] == 1
    assert result["pointsRevoked"] == 9
    assert result["transaction"]["status"] == "CANCELLED"
    assert result["transaction"]["cancellationReason"] == "Kitchen closed"
    assert result["tierDowngraded"] is False

    assert cancelled_again.status_code == 400
    assert cancelled_again.json()["detail"]["error"] == "invalid_state"
    assert no_reference.status_code == 422
    assert push_backend.sent_messages == []


@pytest.mark.asyncio
async def test_insufficient_points_surface_as_invalid_state(
    app_with_db, auth_headers, push_backend, make_customer
) -> None:
    app, session_factory = app_with_db

    async with session_factory() as session:
        customer = await make_customer(session)
        await session.commit()
        customer_id = str(customer.id)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/transactions/complete",
            json=_order(customer_id, "ORD-9002", pointsToUse=5),
            headers=auth_headers,
        )
        empty = await client.post(
            "/api/v1/transactions/complete",
            json={"customerId": customer_id, "orderNumber": "ORD-9003", "items": []},
            headers=auth_headers,
        )

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_state"
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_tier_upgrade_pushes_notification(
    app_with_db, auth_headers, push_backend, make_customer, standard_tiers
) -> None:
    app, session_factory = app_with_db

    async with session_factory() as session:
        tiers = await standard_tiers(session)
        customer = await make_customer(
            session, total_spent=Decimal("950"), visit_count=9, tier=tiers["bronze"]
        )
        await PointLedgerService(session).append_entry(
            customer.id, amount=195, entry_type=PointEntryType.EARNED, source="SEED"
        )
        await PushNotificationDispatcher(session).register_subscription(
            customer.id, endpoint="https://push.example/phone", p256dh_key="k", auth_key="a"
        )
        await session.commit()
        customer_id = str(customer.id)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/transactions/complete",
            json=_order(customer_id, "ORD-9100", price="60.00"),
            headers=auth_headers,
        )

    assert response.status_code == 201
    change = response.json()["tierChange"]
    assert change["fromTier"] == "bronze"
    assert change["toTier"] == "silver"
    assert change["direction"] == "upgrade"

    assert len(push_backend.sent_messages) == 1
    payload = push_backend.sent_messages[0]["payload"]
    assert payload["type"] == "TIER"
    assert payload["data"]["tier"] == "silver"
