import json
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from aircrm_api.core.settings import settings
from aircrm_api.models import NotificationLog, PushSubscription
from aircrm_api.observability.loyalty import get_loyalty_store
from aircrm_api.services.loyalty import NotFoundError
from aircrm_api.services.notifications import (
    HttpPushBackend,
    InMemoryPushBackend,
    PushDeliveryError,
    PushNotificationDispatcher,
)
from aircrm_api.services.notifications.backend import PushTarget
from aircrm_api.services.notifications.dispatcher import notification_url


async def _subscribe(session, customer, endpoint: str) -> PushSubscription:
    return await PushNotificationDispatcher(session, backend=InMemoryPushBackend()).register_subscription(
        customer.id, endpoint=endpoint, p256dh_key="p256dh-key", auth_key="auth-key"
    )


def test_notification_url_defaults_to_dashboard() -> None:
    assert notification_url("CAMPAIGN") == "/mobile/campaigns"
    assert notification_url("TIER") == "/mobile/profile"
    assert notification_url("SOMETHING_ELSE") == "/mobile/dashboard"


@pytest.mark.asyncio
async def test_send_settles_every_delivery_and_logs_outcome(session_factory, make_customer) -> None:
    backend = InMemoryPushBackend(
        failures={"https://push.example/gone": 410, "https://push.example/flaky": 500}
    )
    async with session_factory() as session:
        customer = await make_customer(session)
        await _subscribe(session, customer, "https://push.example/ok")
        gone = await _subscribe(session, customer, "https://push.example/gone")
        flaky = await _subscribe(session, customer, "https://push.example/flaky")

        summary = await PushNotificationDispatcher(session, backend=backend, max_concurrency=2).send(
            [customer.id], title="Happy hour", body="Two for one", notification_type="CAMPAIGN"
        )
        await session.commit()

        assert summary.total_targets == 3
        assert summary.sent_count == 1
        assert summary.failed_count == 2
        assert gone.is_active is False
        assert flaky.is_active is True

        log = await session.get(NotificationLog, summary.log_id)
        assert log.sent_count == 1
        assert log.failed_count == 2
        assert log.target_customer_ids == [str(customer.id)]

    assert [message["endpoint"] for message in backend.sent_messages] == ["https://push.example/ok"]
    payload = backend.sent_messages[0]["payload"]
    assert payload["data"]["url"] == "/mobile/campaigns"
    assert get_loyalty_store().snapshot().push_deliveries == {"succeeded": 1, "failed": 2}


@pytest.mark.asyncio
async def test_send_without_active_subscriptions_is_not_found(session_factory, make_customer) -> None:
    async with session_factory() as session:
        customer = await make_customer(session)
        subscription = await _subscribe(session, customer, "https://push.example/old")
        await PushNotificationDispatcher(session).unregister_subscription(subscription.endpoint)

        with pytest.raises(NotFoundError):
            await PushNotificationDispatcher(session, backend=InMemoryPushBackend()).send(
                [customer.id], title="Hello", body="World"
            )
        with pytest.raises(NotFoundError):
            await PushNotificationDispatcher(session).unregister_subscription("https://push.example/none")


@pytest.mark.asyncio
async def test_register_subscription_upserts_by_endpoint(session_factory, make_customer) -> None:
    async with session_factory() as session:
        first = await make_customer(session, name="First")
        second = await make_customer(session, name="Second")
        original = await _subscribe(session, first, "https://push.example/device")
        original.is_active = False

        moved = await _subscribe(session, second, "https://push.example/device")

        assert moved.id == original.id
        assert moved.customer_id == second.id
        assert moved.is_active is True
        rows = (await session.execute(select(PushSubscription))).scalars().all()
        assert len(rows) == 1

        with pytest.raises(NotFoundError):
            await PushNotificationDispatcher(session).register_subscription(
                uuid4(), endpoint="https://push.example/x", p256dh_key="k", auth_key="a"
            )


@pytest.mark.asyncio
async def test_http_backend_posts_subscription_and_payload() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(201)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        backend = HttpPushBackend(
            gateway_url="https://gateway.example/send", api_key="secret", http_client=client
        )
        await backend.send_push(PushTarget("https://push.example/a", "p", "a"), {"title": "Hi"})

    assert captured["url"] == "https://gateway.example/send"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"] == {
        "subscription": {"endpoint": "https://push.example/a", "keys": {"p256dh": "p", "auth": "a"}},
        "payload": {"title": "Hi"},
    }


@pytest.mark.asyncio
async def test_http_backend_maps_gateway_rejection() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(410))
    async with httpx.AsyncClient(transport=transport) as client:
        backend = HttpPushBackend(gateway_url="https://gateway.example/send", http_client=client)
        with pytest.raises(PushDeliveryError) as excinfo:
            await backend.send_push(PushTarget("https://push.example/a", "p", "a"), {})

    assert excinfo.value.status_code == 410
    assert excinfo.value.subscription_gone is True


@pytest.mark.asyncio
async def test_http_backend_requires_gateway_url(monkeypatch) -> None:
    monkeypatch.setattr(settings, "push_gateway_url", None)
    with pytest.raises(PushDeliveryError):
        await HttpPushBackend().send_push(PushTarget("https://push.example/a", "p", "a"), {})
