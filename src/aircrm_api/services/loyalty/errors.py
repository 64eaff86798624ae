"""Domain error taxonomy for loyalty operations."""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class carrying a machine-readable kind and a readable message."""

    kind = "loyalty_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_detail(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class NotFoundError(LoyaltyError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(LoyaltyError):
    kind = "invalid_state"
    status_code = 400


class LoyaltyValidationError(LoyaltyError):
    kind = "validation_error"
    status_code = 400


class TierConfigurationError(LoyaltyValidationError):
    kind = "tier_configuration"


class ConflictError(LoyaltyError):
    kind = "conflict"
    status_code = 409


__all__ = [
    "ConflictError",
    "InvalidStateError",
    "LoyaltyError",
    "LoyaltyValidationError",
    "NotFoundError",
    "TierConfigurationError",
]
