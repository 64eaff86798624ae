"""API endpoints for point balance reconciliation and ledger history."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from aircrm_api.api.dependencies.security import require_api_access
from aircrm_api.api.errors import loyalty_http_error
from aircrm_api.db.session import get_session
from aircrm_api.models.loyalty import PointEntryType, PointLedgerEntry
from aircrm_api.services.loyalty import LoyaltyError, PointLedgerService
from aircrm_api.services.loyalty.ledger import ReconciliationResult, ReconciliationSummary


router = APIRouter(tags=["points"], dependencies=[Depends(require_api_access)])


class RecalculateRequest(BaseModel):
    customerId: Optional[UUID] = Field(None, description="Reconcile a single customer")
    all: bool = Field(False, description="Reconcile every customer")

    @model_validator(mode="after")
    def validate_target(self) -> "RecalculateRequest":
        if self.customerId is None and not self.all:
            raise ValueError("customerId or all=true must be provided")
        return self


class LedgerDetailsResponse(BaseModel):
    earned: int
    spent: int
    expired: int
    adjusted: int
    transactions: int
    balanceCorrected: int


class RecalculateResultResponse(BaseModel):
    customerId: UUID
    customerName: Optional[str]
    customerEmail: Optional[str]
    oldPoints: int
    newPoints: int
    difference: int
    status: Literal["UNCHANGED", "INCREASED", "DECREASED", "FAILED"]
    details: Optional[LedgerDetailsResponse] = None
    error: Optional[str] = None


class RecalculateSummaryResponse(BaseModel):
    totalProcessed: int
    totalCorrected: int
    totalPointsAdded: int
    totalPointsRemoved: int
    totalFailed: int


class RecalculateResponse(BaseModel):
    success: bool = True
    summary: RecalculateSummaryResponse
    results: List[RecalculateResultResponse]


class LedgerEntryCreateRequest(BaseModel):
    customerId: UUID
    amount: int = Field(..., description="Signed point amount")
    type: PointEntryType
    source: str = Field("MANUAL", min_length=1)
    sourceId: Optional[str] = None
    description: Optional[str] = None
    expiresAt: Optional[datetime] = None


class LedgerEntryResponse(BaseModel):
    id: UUID
    customerId: UUID
    amount: int
    type: PointEntryType
    source: str
    sourceId: Optional[str]
    description: Optional[str]
    balance: int
    expiresAt: Optional[datetime]
    createdAt: datetime


class LedgerEntryCreateResponse(BaseModel):
    entry: LedgerEntryResponse
    balance: int


class LedgerPageResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    total: int
    page: int
    limit: int
    pages: int


@router.post("/points/recalculate", response_model=RecalculateResponse)
async def recalculate_points(
    payload: RecalculateRequest,
    db: AsyncSession = Depends(get_session),
) -> RecalculateResponse:
    """Replay ledgers and repair cached balances for one or all customers."""

    service = PointLedgerService(db)
    if payload.customerId is not None:
        try:
            summary = ReconciliationSummary(results=[await service.reconcile_customer(payload.customerId)])
        except LoyaltyError as error:
            raise loyalty_http_error(error) from error
    else:
        summary = await service.reconcile_all()
    await db.commit()

    return RecalculateResponse(
        summary=RecalculateSummaryResponse(**summary.as_dict()),
        results=[_serialize_result(result) for result in summary.results],
    )


@router.get("/point-history", response_model=LedgerPageResponse)
async def list_point_history(
    customerId: UUID = Query(...),
    type: Optional[PointEntryType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
) -> LedgerPageResponse:
    ledger_page = await PointLedgerService(db).list_entries(
        customerId, entry_type=type, page=page, limit=limit
    )
    return LedgerPageResponse(
        entries=[_serialize_entry(entry) for entry in ledger_page.entries],
        total=ledger_page.total,
        page=ledger_page.page,
        limit=ledger_page.limit,
        pages=ledger_page.pages,
    )


@router.post(
    "/point-history",
    response_model=LedgerEntryCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_point_entry(
    payload: LedgerEntryCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryCreateResponse:
    """Append a manual ledger entry and return the synced balance."""

    try:
        result = await PointLedgerService(db).append_entry(
            payload.customerId,
            amount=payload.amount,
            entry_type=payload.type,
            source=payload.source,
            source_id=payload.sourceId,
            description=payload.description,
            expires_at=payload.expiresAt,
        )
    except LoyaltyError as error:
        raise loyalty_http_error(error) from error
    await db.commit()
    return LedgerEntryCreateResponse(entry=_serialize_entry(result.entry), balance=result.balance)


def _serialize_result(result: ReconciliationResult) -> RecalculateResultResponse:
    details = None
    if result.breakdown is not None:
        details = LedgerDetailsResponse(
            earned=result.breakdown.earned,
            spent=result.breakdown.spent,
            expired=result.breakdown.expired,
            adjusted=result.breakdown.adjusted,
            transactions=result.breakdown.transactions,
            balanceCorrected=result.corrections,
        )
    return RecalculateResultResponse(
        customerId=result.customer_id,
        customerName=result.name,
        customerEmail=result.email,
        oldPoints=result.old_points,
        newPoints=result.new_points,
        difference=result.difference,
        status=result.status,
        details=details,
        error=result.error,
    )


def _serialize_entry(entry: PointLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        customerId=entry.customer_id,
        amount=entry.amount,
        type=entry.entry_type,
        source=entry.source,
        sourceId=entry.source_id,
        description=entry.description,
        balance=entry.balance,
        expiresAt=entry.expires_at,
        createdAt=entry.created_at,
    )
