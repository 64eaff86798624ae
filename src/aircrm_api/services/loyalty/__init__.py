"""Loyalty services package."""

from .cancellation import CancellationOptions, CancellationResult, TransactionCancellationService
from .errors import (
    ConflictError,
    InvalidStateError,
    LoyaltyError,
    LoyaltyValidationError,
    NotFoundError,
    TierConfigurationError,
)
from .ledger import (
    ExpiryResult,
    PointLedgerService,
    ReconciliationResult,
    ReconciliationSummary,
    replay_ledger,
)
from .rewards import RedemptionResult, RewardService, milestone_reached
from .stamps import StampService, StampSummary, compute_stamp_counts
from .tiers import CustomerStats, TierChange, TierService, evaluate_tier
from .transactions import CampaignApplication, CompletionResult, TransactionLine, TransactionService

__all__ = [
    "CampaignApplication",
    "CancellationOptions",
    "CancellationResult",
    "CompletionResult",
    "ConflictError",
    "CustomerStats",
    "ExpiryResult",
    "InvalidStateError",
    "LoyaltyError",
    "LoyaltyValidationError",
    "NotFoundError",
    "PointLedgerService",
    "ReconciliationResult",
    "ReconciliationSummary",
    "RedemptionResult",
    "RewardService",
    "StampService",
    "StampSummary",
    "TierChange",
    "TierConfigurationError",
    "TierService",
    "TransactionCancellationService",
    "TransactionLine",
    "TransactionService",
    "compute_stamp_counts",
    "evaluate_tier",
    "milestone_reached",
    "replay_ledger",
]
