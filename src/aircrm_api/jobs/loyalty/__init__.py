"""Loyalty job exports."""

from .expiry import run_points_expiry  # noqa: F401
from .reconciliation import run_points_reconciliation  # noqa: F401

__all__ = ["run_points_expiry", "run_points_reconciliation"]
