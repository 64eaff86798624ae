"""Tier eligibility evaluation, configuration and progress reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Literal, Optional, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.models.customer import Customer
from aircrm_api.models.loyalty import Tier, TierHistory
from aircrm_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .errors import NotFoundError, TierConfigurationError

TierDirection = Literal["upgrade", "downgrade", "unchanged"]

_THRESHOLDS: tuple[tuple[str, str], ...] = (
    ("min_total_spent", "total_spent"),
    ("min_visit_count", "visit_count"),
    ("min_points", "points"),
)


class _TierLike(Protocol):
    id: Any
    level: int
    min_total_spent: Optional[Decimal]
    min_visit_count: Optional[int]
    min_points: Optional[int]


@dataclass(frozen=True)
class CustomerStats:
    total_spent: Decimal
    visit_count: int
    points: int

    @classmethod
    def of(cls, customer: Customer) -> "CustomerStats":
        return cls(
            total_spent=Decimal(customer.total_spent or 0),
            visit_count=int(customer.visit_count or 0),
            points=int(customer.points or 0),
        )


@dataclass
class TierEvaluation:
    current_tier: Optional[_TierLike]
    eligible_tier: Optional[_TierLike]

    @property
    def current_level(self) -> int:
        return self.current_tier.level if self.current_tier is not None else -1

    @property
    def direction(self) -> TierDirection:
        # No eligible tier leaves the assignment untouched.
        if self.eligible_tier is None or self.eligible_tier.level == self.current_level:
            return "unchanged"
        return "upgrade" if self.eligible_tier.level > self.current_level else "downgrade"


@dataclass
class TierChange:
    customer_id: UUID
    from_tier: Optional[Tier]
    to_tier: Tier
    direction: TierDirection
    triggered_by: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "customerId": str(self.customer_id),
            "fromTier": self.from_tier.name if self.from_tier is not None else None,
            "toTier": self.to_tier.name,
            "direction": self.direction,
            "triggeredBy": self.triggered_by,
        }


@dataclass
class TierRequirement:
    dimension: str
    current: float
    target: float

    @property
    def progress(self) -> float:
        if self.target <= 0:
            return 100.0
        return min(self.current / self.target * 100, 100.0)


@dataclass
class TierProgress:
    customer_id: UUID
    current_tier: Optional[Tier]
    next_tier: Optional[Tier]
    requirements: list[TierRequirement] = field(default_factory=list)

    @property
    def overall_progress(self) -> float:
        if self.next_tier is None:
            return 100.0
        if not self.requirements:
            return 0.0
        return sum(item.progress for item in self.requirements) / len(self.requirements)


def tier_qualifies(tier: _TierLike, stats: CustomerStats) -> bool:
    """A tier qualifies when every non-null threshold is met inclusively."""

    for threshold_attr, stat_attr in _THRESHOLDS:
        threshold = getattr(tier, threshold_attr)
        if threshold is None:
            continue
        if getattr(stats, stat_attr) < threshold:
            return False
    return True


def evaluate_tier(
    stats: CustomerStats,
    tiers: Iterable[_TierLike],
    current_tier: Optional[_TierLike] = None,
) -> TierEvaluation:
    """Pick the highest-level qualifying tier among ``tiers`` (active tiers only)."""

    eligible: Optional[_TierLike] = None
    for tier in sorted(tiers, key=lambda item: item.level, reverse=True):
        if tier_qualifies(tier, stats):
            eligible = tier
            break
    return TierEvaluation(current_tier=current_tier, eligible_tier=eligible)


def check_tier_ordering(candidate: _TierLike, existing: Iterable[_TierLike]) -> None:
    """Reject thresholds that would invert relative to neighbouring levels."""

    for tier in existing:
        if tier.level == candidate.level:
            continue
        for threshold_attr, _ in _THRESHOLDS:
            mine = getattr(candidate, threshold_attr)
            theirs = getattr(tier, threshold_attr)
            if mine is None or theirs is None:
                continue
            if tier.level < candidate.level and mine < theirs:
                raise TierConfigurationError(
                    f"{threshold_attr} must not be lower than level {tier.level}'s threshold"
                )
            if tier.level > candidate.level and mine > theirs:
                raise TierConfigurationError(
                    f"{threshold_attr} must not exceed level {tier.level}'s threshold"
                )


class TierService:
    """Assign tiers to customers and manage the tier catalogue."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._observability = observability or get_loyalty_store()

    async def list_tiers(self, *, include_inactive: bool = False) -> Sequence[Tier]:
        stmt = select(Tier).order_by(Tier.level.asc())
        if not include_inactive:
            stmt = stmt.where(Tier.is_active.is_(True))
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def create_tier(
        self,
        *,
        name: str,
        display_name: str,
        level: int,
        description: str | None = None,
        min_total_spent: Decimal | None = None,
        min_visit_count: int | None = None,
        min_points: int | None = None,
        point_multiplier: Decimal = Decimal("1"),
        discount_percent: Decimal | None = None,
        is_active: bool = True,
    ) -> Tier:
        if level < 0:
            raise TierConfigurationError("Tier level must be zero or greater")
        if point_multiplier <= 0:
            raise TierConfigurationError("Point multiplier must be positive")
        for label, value in (
            ("min_total_spent", min_total_spent),
            ("min_visit_count", min_visit_count),
            ("min_points", min_points),
        ):
            if value is not None and value < 0:
                raise TierConfigurationError(f"{label} must not be negative")

        stmt = select(Tier).where(or_(Tier.name == name, Tier.level == level))
        clash = (await self._db.execute(stmt)).scalars().first()
        if clash is not None:
            field_name = "name" if clash.name == name else "level"
            raise TierConfigurationError(f"A tier with this {field_name} already exists")

        tier = Tier(
            name=name,
            display_name=display_name,
            description=description,
            level=level,
            min_total_spent=min_total_spent,
            min_visit_count=min_visit_count,
            min_points=min_points,
            point_multiplier=point_multiplier,
            discount_percent=discount_percent,
            is_active=is_active,
        )
        check_tier_ordering(tier, await self.list_tiers(include_inactive=True))

        self._db.add(tier)
        await self._db.flush()
        logger.info("Created loyalty tier", tier=name, level=level)
        return tier

    async def evaluate_customer(
        self,
        customer: Customer,
        *,
        allow_downgrade: bool = False,
        triggered_by: str = "AUTOMATIC",
        reason: str | None = None,
    ) -> Optional[TierChange]:
        """Apply the evaluated tier; downgrades only when ``allow_downgrade`` is set."""

        all_tiers = await self.list_tiers(include_inactive=True)
        current = next((tier for tier in all_tiers if tier.id == customer.tier_id), None)
        active = [tier for tier in all_tiers if tier.is_active]

        evaluation = evaluate_tier(CustomerStats.of(customer), active, current)
        direction = evaluation.direction
        target = evaluation.eligible_tier
        if target is None or direction == "unchanged":
            return None
        if direction == "downgrade" and not allow_downgrade:
            return None

        customer.tier_id = target.id
        self._db.add(
            TierHistory(
                customer_id=customer.id,
                from_tier_id=current.id if current is not None else None,
                to_tier_id=target.id,
                reason=reason or f"Automatic {direction} to {target.name}",
                triggered_by=triggered_by,
            )
        )
        await self._db.flush()

        self._observability.record_tier_change(direction)
        logger.info(
            "Customer tier changed",
            customer_id=str(customer.id),
            from_tier=current.name if current is not None else None,
            to_tier=target.name,
            direction=direction,
            triggered_by=triggered_by,
        )
        return TierChange(
            customer_id=customer.id,
            from_tier=current,
            to_tier=target,
            direction=direction,
            triggered_by=triggered_by,
        )

    async def tier_progress(self, customer_id: UUID) -> TierProgress:
        customer = await self._db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError(f"Customer not found: {customer_id}")

        all_tiers = await self.list_tiers(include_inactive=True)
        current = next((tier for tier in all_tiers if tier.id == customer.tier_id), None)
        current_level = current.level if current is not None else -1
        next_tier = next(
            (tier for tier in all_tiers if tier.is_active and tier.level > current_level),
            None,
        )

        progress = TierProgress(customer_id=customer.id, current_tier=current, next_tier=next_tier)
        if next_tier is None:
            return progress

        stats = CustomerStats.of(customer)
        for threshold_attr, stat_attr in _THRESHOLDS:
            target = getattr(next_tier, threshold_attr)
            if not target:
                continue
            progress.requirements.append(
                TierRequirement(
                    dimension=stat_attr,
                    current=float(getattr(stats, stat_attr)),
                    target=float(target),
                )
            )
        return progress


__all__ = [
    "CustomerStats",
    "TierChange",
    "TierEvaluation",
    "TierProgress",
    "TierRequirement",
    "TierService",
    "check_tier_ordering",
    "evaluate_tier",
    "tier_qualifies",
]
