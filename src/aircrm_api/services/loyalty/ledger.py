"""Point ledger appends and balance reconciliation.

The ledger is the source of truth for a customer's points. ``Customer.points``
is a cache that is only ever written by :meth:`PointLedgerService.reconcile_customer`,
so every point-affecting operation appends an entry and then syncs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.models._time import utcnow
from aircrm_api.models.customer import Customer
from aircrm_api.models.loyalty import PointEntryType, PointLedgerEntry
from aircrm_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .errors import LoyaltyValidationError, NotFoundError


class _LedgerRow(Protocol):
    id: Any
    amount: int
    entry_type: PointEntryType
    balance: int


@dataclass
class LedgerBreakdown:
    """Totals per entry type; spent and expired are reported as magnitudes."""

    earned: int = 0
    spent: int = 0
    expired: int = 0
    adjusted: int = 0
    transactions: int = 0


@dataclass
class LedgerReplay:
    balance: int
    corrections: list[tuple[Any, int]]
    breakdown: LedgerBreakdown


@dataclass
class ReconciliationResult:
    customer_id: UUID
    name: Optional[str]
    email: Optional[str]
    old_points: int
    new_points: int
    breakdown: Optional[LedgerBreakdown] = None
    corrections: int = 0
    error: Optional[str] = None

    @property
    def difference(self) -> int:
        return self.new_points - self.old_points

    @property
    def status(self) -> str:
        if self.error is not None:
            return "FAILED"
        if self.difference == 0:
            return "UNCHANGED"
        return "INCREASED" if self.difference > 0 else "DECREASED"


@dataclass
class ReconciliationSummary:
    results: list[ReconciliationResult] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.results)

    @property
    def total_corrected(self) -> int:
        return sum(1 for result in self.results if result.error is None and result.difference != 0)

    @property
    def total_failed(self) -> int:
        return sum(1 for result in self.results if result.error is not None)

    @property
    def total_points_added(self) -> int:
        return sum(max(0, result.difference) for result in self.results)

    @property
    def total_points_removed(self) -> int:
        return sum(min(0, result.difference) for result in self.results)

    def as_dict(self) -> dict[str, int]:
        return {
            "totalProcessed": self.total_processed,
            "totalCorrected": self.total_corrected,
            "totalPointsAdded": self.total_points_added,
            "totalPointsRemoved": self.total_points_removed,
            "totalFailed": self.total_failed,
        }


@dataclass
class LedgerAppendResult:
    entry: PointLedgerEntry
    balance: int


@dataclass
class ExpiryResult:
    customer_id: UUID
    entries_expired: int = 0
    points_expired: int = 0
    balance: int = 0


@dataclass
class LedgerPage:
    entries: list[PointLedgerEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def replay_ledger(entries: Iterable[_LedgerRow]) -> LedgerReplay:
    """Replay signed amounts in order, clamping the running balance at zero per step.

    Entries must already be in creation order. Returns the final balance and the
    ``(entry_id, expected_balance)`` pairs whose stored snapshot disagrees.
    """

    running = 0
    breakdown = LedgerBreakdown()
    corrections: list[tuple[Any, int]] = []

    for entry in entries:
        amount = int(entry.amount)
        if entry.entry_type == PointEntryType.EARNED:
            breakdown.earned += amount
        elif entry.entry_type == PointEntryType.SPENT:
            breakdown.spent += abs(amount)
        elif entry.entry_type == PointEntryType.EXPIRED:
            breakdown.expired += abs(amount)
        else:
            breakdown.adjusted += amount
        breakdown.transactions += 1

        # TODO: clamping per step hides out-of-order or mis-signed entries; surface them once
        # the admin ledger view can show a per-entry anomaly flag.
        running = max(0, running + amount)
        if entry.balance != running:
            corrections.append((entry.id, running))

    return LedgerReplay(balance=running, corrections=corrections, breakdown=breakdown)


def validate_entry_sign(entry_type: PointEntryType, amount: int) -> None:
    """Amounts are pre-signed: credits positive, debits negative."""

    if amount == 0:
        raise LoyaltyValidationError("Ledger entries require a non-zero amount")
    if entry_type == PointEntryType.EARNED and amount < 0:
        raise LoyaltyValidationError("EARNED entries must carry a positive amount")
    if entry_type in {PointEntryType.SPENT, PointEntryType.EXPIRED} and amount > 0:
        raise LoyaltyValidationError(f"{entry_type.value} entries must carry a negative amount")


class PointLedgerService:
    """Append-then-sync access to the point ledger."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_loyalty_store()

    async def lock_customer(self, customer_id: UUID) -> Customer:
        """Load the customer row under a row lock to serialize point mutations."""

        stmt = (
            select(Customer)
            .where(Customer.id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        customer = result.scalar_one_or_none()
        if customer is None:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return customer

    async def append_entry(
        self,
        customer_id: UUID,
        *,
        amount: int,
        entry_type: PointEntryType,
        source: str,
        source_id: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> LedgerAppendResult:
        """Append one signed entry and resync the customer's cached balance."""

        validate_entry_sign(entry_type, amount)
        customer = await self.lock_customer(customer_id)

        entry = PointLedgerEntry(
            customer_id=customer.id,
            amount=amount,
            entry_type=entry_type,
            source=source,
            source_id=source_id,
            description=description,
            balance=max(0, int(customer.points or 0) + amount),
            expires_at=expires_at,
        )
        self._db.add(entry)
        await self._db.flush()

        result = await self.reconcile_customer(customer.id)
        logger.info(
            "Recorded point ledger entry",
            customer_id=str(customer.id),
            amount=amount,
            entry_type=entry_type.value,
            source=source,
            balance=result.new_points,
        )
        return LedgerAppendResult(entry=entry, balance=result.new_points)

    async def list_entries(
        self,
        customer_id: UUID,
        *,
        entry_type: PointEntryType | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> LedgerPage:
        """Return a newest-first page of a customer's ledger."""

        filters = [PointLedgerEntry.customer_id == customer_id]
        if entry_type is not None:
            filters.append(PointLedgerEntry.entry_type == entry_type)

        stmt = (
            select(PointLedgerEntry)
            .where(*filters)
            .order_by(PointLedgerEntry.created_at.desc(), PointLedgerEntry.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(PointLedgerEntry).where(*filters)

        entries = list((await self._db.execute(stmt)).scalars().all())
        total = int((await self._db.execute(count_stmt)).scalar_one())
        return LedgerPage(entries=entries, total=total, page=page, limit=limit)

    async def reconcile_customer(self, customer_id: UUID) -> ReconciliationResult:
        """Replay the ledger, correct drifted snapshots and the cached balance.

        Runs under the customer row lock so a concurrent append cannot be lost.
        """

        customer = await self.lock_customer(customer_id)

        entries = await self._load_entries(customer_id)
        replay = replay_ledger(entries)

        by_id = {entry.id: entry for entry in entries}
        for entry_id, expected in replay.corrections:
            by_id[entry_id].balance = expected

        old_points = int(customer.points or 0)
        if old_points != replay.balance:
            customer.points = replay.balance
        await self._db.flush()

        result = ReconciliationResult(
            customer_id=customer.id,
            name=customer.name,
            email=customer.email,
            old_points=old_points,
            new_points=replay.balance,
            breakdown=replay.breakdown,
            corrections=len(replay.corrections),
        )
        self._observability.record_reconciliation(result.status, corrections=result.corrections)
        if result.difference or result.corrections:
            logger.info(
                "Reconciled customer point balance",
                customer_id=str(customer.id),
                old_points=old_points,
                new_points=replay.balance,
                corrections=result.corrections,
            )
        return result

    async def reconcile_all(self) -> ReconciliationSummary:
        """Reconcile every customer; one customer's failure never aborts the batch.

        Each customer runs inside a savepoint, so a database error rolls back only
        that customer's writes and leaves the outer transaction usable.
        """

        customers = await self._list_customer_refs()
        summary = ReconciliationSummary()
        for customer_id, name, email, points in customers:
            try:
                async with self._db.begin_nested():
                    result = await self.reconcile_customer(customer_id)
            except Exception as exc:
                logger.warning(
                    "Skipping customer during point reconciliation",
                    customer_id=str(customer_id),
                    error=str(exc),
                )
                self._observability.record_reconciliation("FAILED")
                result = ReconciliationResult(
                    customer_id=customer_id,
                    name=name,
                    email=email,
                    old_points=int(points or 0),
                    new_points=int(points or 0),
                    error=str(exc),
                )
            summary.results.append(result)

        logger.info("Point reconciliation batch finished", **summary.as_dict())
        return summary

    async def expire_points(self, customer_id: UUID, *, as_of: datetime | None = None) -> ExpiryResult:
        """Append an EXPIRED entry for every lapsed EARNED entry.

        An EARNED entry is skipped when an EXPIRED entry already references it, or
        when the purchase it came from has been revoked by a cancellation.
        """

        as_of = as_of or utcnow()
        customer = await self.lock_customer(customer_id)

        due = (
            await self._db.execute(
                select(PointLedgerEntry)
                .where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.entry_type == PointEntryType.EARNED,
                    PointLedgerEntry.expires_at.is_not(None),
                    PointLedgerEntry.expires_at <= as_of,
                )
                .order_by(PointLedgerEntry.created_at.asc(), PointLedgerEntry.id.asc())
            )
        ).scalars().all()

        settled = (
            await self._db.execute(
                select(PointLedgerEntry.entry_type, PointLedgerEntry.source_id).where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.source_id.is_not(None),
                    or_(
                        PointLedgerEntry.entry_type == PointEntryType.EXPIRED,
                        PointLedgerEntry.source == "CANCELLATION",
                    ),
                )
            )
        ).all()
        expired_ids = {source_id for entry_type, source_id in settled if entry_type == PointEntryType.EXPIRED}
        revoked_sources = {
            source_id for entry_type, source_id in settled if entry_type != PointEntryType.EXPIRED
        }

        result = ExpiryResult(customer_id=customer.id, balance=int(customer.points or 0))
        for entry in due:
            if str(entry.id) in expired_ids or (entry.source_id and entry.source_id in revoked_sources):
                continue
            appended = await self.append_entry(
                customer.id,
                amount=-int(entry.amount),
                entry_type=PointEntryType.EXPIRED,
                source="SYSTEM",
                source_id=str(entry.id),
                description=f"Points expired from {entry.source}",
            )
            result.entries_expired += 1
            result.points_expired += int(entry.amount)
            result.balance = appended.balance

        if result.entries_expired:
            logger.info(
                "Expired customer points",
                customer_id=str(customer.id),
                entries=result.entries_expired,
                points=result.points_expired,
                balance=result.balance,
            )
        return result

    async def expired_points_for_source(self, customer_id: UUID, source_id: str) -> int:
        """Points already expired out of the EARNED entries carrying ``source_id``."""

        earned_ids = (
            await self._db.execute(
                select(PointLedgerEntry.id).where(
                    PointLedgerEntry.customer_id == customer_id,
                    PointLedgerEntry.entry_type == PointEntryType.EARNED,
                    PointLedgerEntry.source_id == source_id,
                )
            )
        ).scalars().all()
        if not earned_ids:
            return 0
        expired = await self._db.execute(
            select(func.coalesce(func.sum(PointLedgerEntry.amount), 0)).where(
                PointLedgerEntry.customer_id == customer_id,
                PointLedgerEntry.entry_type == PointEntryType.EXPIRED,
                PointLedgerEntry.source_id.in_([str(entry_id) for entry_id in earned_ids]),
            )
        )
        return abs(int(expired.scalar_one()))

    async def _list_customer_refs(self) -> Sequence[tuple[UUID, str, str | None, int]]:
        stmt = select(Customer.id, Customer.name, Customer.email, Customer.points).order_by(
            Customer.created_at.asc(), Customer.id.asc()
        )
        result = await self._db.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def _load_entries(self, customer_id: UUID) -> list[PointLedgerEntry]:
        stmt = (
            select(PointLedgerEntry)
            .where(PointLedgerEntry.customer_id == customer_id)
            .order_by(PointLedgerEntry.created_at.asc(), PointLedgerEntry.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "ExpiryResult",
    "LedgerAppendResult",
    "LedgerBreakdown",
    "LedgerPage",
    "LedgerReplay",
    "PointLedgerService",
    "ReconciliationResult",
    "ReconciliationSummary",
    "replay_ledger",
    "validate_entry_sign",
]
