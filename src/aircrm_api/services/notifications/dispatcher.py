"""Fan-out of push notifications to customer subscriptions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.core.settings import settings
from aircrm_api.models._time import utcnow
from aircrm_api.models.customer import Customer
from aircrm_api.models.notification import NotificationLog, PushSubscription
from aircrm_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from aircrm_api.services.loyalty.errors import NotFoundError
from aircrm_api.services.loyalty.tiers import TierChange

from .backend import HttpPushBackend, PushBackend, PushDeliveryError, PushTarget

_NOTIFICATION_URLS = {
    "CAMPAIGN": "/mobile/campaigns",
    "REWARD": "/mobile/rewards",
    "POINTS": "/mobile/profile",
    "TIER": "/mobile/profile",
}


def notification_url(notification_type: str) -> str:
    return _NOTIFICATION_URLS.get(notification_type, "/mobile/dashboard")


@dataclass
class PushDeliveryResult:
    subscription_id: UUID
    customer_id: UUID
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": str(self.subscription_id),
            "customerId": str(self.customer_id),
            "success": self.success,
            "statusCode": self.status_code,
            "error": self.error,
        }


@dataclass
class PushDispatchSummary:
    log_id: UUID
    results: list[PushDeliveryResult] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def total_targets(self) -> int:
        return len(self.results)


class PushNotificationDispatcher:
    """Deliver a notification to every active subscription of the target customers.

    Deliveries run concurrently up to ``push_max_concurrency``; every delivery is
    settled and a single failure never fails the batch. Database writes happen
    after the fan-out so the session is only used from one task.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        backend: PushBackend | None = None,
        max_concurrency: int | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._backend = backend or HttpPushBackend()
        self._max_concurrency = max_concurrency or settings.push_max_concurrency
        self._observability = observability or get_loyalty_store()

    async def send(
        self,
        customer_ids: Sequence[UUID],
        *,
        title: str,
        body: str,
        notification_type: str = "GENERAL",
        data: dict[str, Any] | None = None,
    ) -> PushDispatchSummary:
        stmt = select(PushSubscription).where(
            PushSubscription.customer_id.in_(list(customer_ids)),
            PushSubscription.is_active.is_(True),
        )
        subscriptions = list((await self._db.execute(stmt)).scalars().all())
        if not subscriptions:
            raise NotFoundError("No active push subscriptions for the target customers")

        payload = {
            "title": title,
            "body": body,
            "type": notification_type,
            "icon": settings.push_default_icon,
            "data": {"type": notification_type, "url": notification_url(notification_type), **(data or {})},
        }

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _deliver(subscription: PushSubscription) -> None:
            target = PushTarget(
                endpoint=subscription.endpoint,
                p256dh_key=subscription.p256dh_key,
                auth_key=subscription.auth_key,
            )
            async with semaphore:
                await self._backend.send_push(target, payload)

        outcomes = await asyncio.gather(
            *(_deliver(subscription) for subscription in subscriptions),
            return_exceptions=True,
        )

        now = utcnow()
        results: list[PushDeliveryResult] = []
        for subscription, outcome in zip(subscriptions, outcomes):
            if outcome is None:
                subscription.last_used_at = now
                results.append(
                    PushDeliveryResult(
                        subscription_id=subscription.id,
                        customer_id=subscription.customer_id,
                        success=True,
                    )
                )
                continue

            status_code = outcome.status_code if isinstance(outcome, PushDeliveryError) else None
            if isinstance(outcome, PushDeliveryError) and outcome.subscription_gone:
                subscription.is_active = False
            logger.warning(
                "Push delivery failed",
                subscription_id=str(subscription.id),
                customer_id=str(subscription.customer_id),
                status_code=status_code,
                error=str(outcome),
            )
            results.append(
                PushDeliveryResult(
                    subscription_id=subscription.id,
                    customer_id=subscription.customer_id,
                    success=False,
                    status_code=status_code,
                    error=str(outcome),
                )
            )

        log = NotificationLog(
            title=title,
            body=body,
            type=notification_type,
            target_customer_ids=[str(customer_id) for customer_id in customer_ids],
            sent_count=sum(1 for result in results if result.success),
            failed_count=sum(1 for result in results if not result.success),
            delivery_results=[result.as_dict() for result in results],
        )
        self._db.add(log)
        await self._db.flush()

        summary = PushDispatchSummary(log_id=log.id, results=results)
        self._observability.record_push_delivery(
            succeeded=summary.sent_count, failed=summary.failed_count
        )
        logger.info(
            "Dispatched push notification",
            notification_type=notification_type,
            sent=summary.sent_count,
            failed=summary.failed_count,
        )
        return summary

    async def send_tier_change(self, change: TierChange) -> Optional[PushDispatchSummary]:
        """Notify a customer about a tier change; failures are logged, never raised."""

        if change.direction == "upgrade":
            title = "Tier upgraded"
            body = f"Congratulations! You are now {change.to_tier.display_name}."
        else:
            title = "Tier updated"
            body = f"Your membership tier is now {change.to_tier.display_name}."

        try:
            summary = await self.send(
                [change.customer_id],
                title=title,
                body=body,
                notification_type="TIER",
                data={"tier": change.to_tier.name, "direction": change.direction},
            )
            await self._db.commit()
        except NotFoundError:
            logger.debug("No push subscriptions for tier change", customer_id=str(change.customer_id))
            return None
        except Exception as exc:
            await self._db.rollback()
            logger.exception(
                "Tier change notification failed", customer_id=str(change.customer_id), error=str(exc)
            )
            return None
        return summary

    async def register_subscription(
        self,
        customer_id: UUID,
        *,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
    ) -> PushSubscription:
        """Create or refresh the subscription identified by ``endpoint``."""

        if await self._db.get(Customer, customer_id) is None:
            raise NotFoundError(f"Customer not found: {customer_id}")

        stmt = select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        subscription = (await self._db.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            subscription = PushSubscription(endpoint=endpoint)
            self._db.add(subscription)
        subscription.customer_id = customer_id
        subscription.p256dh_key = p256dh_key
        subscription.auth_key = auth_key
        subscription.is_active = True
        await self._db.flush()
        return subscription

    async def unregister_subscription(self, endpoint: str) -> PushSubscription:
        stmt = select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        subscription = (await self._db.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Push subscription not found")
        subscription.is_active = False
        await self._db.flush()
        return subscription


__all__ = [
    "PushDeliveryResult",
    "PushDispatchSummary",
    "PushNotificationDispatcher",
    "notification_url",
]
