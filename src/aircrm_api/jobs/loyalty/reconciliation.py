"""Job that reconciles every customer's cached point balance against the ledger."""

# meta: job: points-reconciliation

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.models.customer import Customer
from aircrm_api.observability.loyalty import get_loyalty_store
from aircrm_api.services.loyalty.ledger import (
    PointLedgerService,
    ReconciliationResult,
    ReconciliationSummary,
)

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_points_reconciliation(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Reconcile all customers, each in its own session and commit."""

    async with await _open_session(session_factory) as session:
        result = await session.execute(
            select(Customer.id).order_by(Customer.created_at.asc(), Customer.id.asc())
        )
        customer_ids: list[UUID] = list(result.scalars().all())

    summary = ReconciliationSummary()
    for customer_id in customer_ids:
        async with await _open_session(session_factory) as session:
            try:
                outcome = await PointLedgerService(session).reconcile_customer(customer_id)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                get_loyalty_store().record_reconciliation("FAILED")
                logger.warning(
                    "Point reconciliation failed for customer",
                    customer_id=str(customer_id),
                    error=str(exc),
                )
                outcome = ReconciliationResult(
                    customer_id=customer_id,
                    name=None,
                    email=None,
                    old_points=0,
                    new_points=0,
                    error=str(exc),
                )
        summary.results.append(outcome)

    report = {
        "processed": summary.total_processed,
        "corrected": summary.total_corrected,
        "failed": summary.total_failed,
        "points_added": summary.total_points_added,
        "points_removed": summary.total_points_removed,
    }
    logger.bind(summary=report).info("Points reconciliation sweep completed")
    return report
