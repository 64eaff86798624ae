"""Background workers supporting async processing."""

from .points_expiry import PointsExpiryWorker
from .points_reconciliation import PointsReconciliationWorker

__all__ = ["PointsExpiryWorker", "PointsReconciliationWorker"]
