from fastapi import APIRouter

from .endpoints import (
    health,
    notifications,
    observability,
    points,
    rewards,
    stamps,
    tiers,
    transactions,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(points.router)
router.include_router(stamps.router)
router.include_router(transactions.router)
router.include_router(tiers.router)
router.include_router(rewards.router)
router.include_router(notifications.router)
router.include_router(observability.router)
