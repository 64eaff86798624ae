"""Job that expires lapsed EARNED points for every affected customer."""

# meta: job: points-expiry

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select

from aircrm_api.models._time import utcnow
from aircrm_api.models.loyalty import PointEntryType, PointLedgerEntry
from aircrm_api.services.loyalty.ledger import PointLedgerService

from .reconciliation import SessionFactory, _open_session


async def run_points_expiry(
    *,
    session_factory: SessionFactory,
    as_of: datetime | None = None,
) -> Dict[str, Any]:
    """Expire due points customer by customer, committing each one separately."""

    as_of = as_of or utcnow()
    async with await _open_session(session_factory) as session:
        result = await session.execute(
            select(PointLedgerEntry.customer_id)
            .where(
                PointLedgerEntry.entry_type == PointEntryType.EARNED,
                PointLedgerEntry.expires_at.is_not(None),
                PointLedgerEntry.expires_at <= as_of,
            )
            .distinct()
        )
        customer_ids: list[UUID] = list(result.scalars().all())

    report = {"customers": 0, "entries_expired": 0, "points_expired": 0, "failed": 0}
    for customer_id in customer_ids:
        async with await _open_session(session_factory) as session:
            try:
                outcome = await PointLedgerService(session).expire_points(customer_id, as_of=as_of)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                report["failed"] += 1
                logger.warning(
                    "Point expiry failed for customer",
                    customer_id=str(customer_id),
                    error=str(exc),
                )
                continue
        if outcome.entries_expired:
            report["customers"] += 1
            report["entries_expired"] += outcome.entries_expired
            report["points_expired"] += outcome.points_expired

    logger.bind(summary=report).info("Points expiry sweep completed")
    return report
