from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from aircrm_api.core.settings import settings
from aircrm_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import PointsExpiryWorker, PointsReconciliationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciliation_worker = PointsReconciliationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.points_reconciliation_interval_seconds,
    )
    app.state.points_reconciliation_worker = reconciliation_worker

    reconciliation_enabled = settings.points_reconciliation_worker_enabled
    if reconciliation_enabled:
        reconciliation_worker.start()
        logger.info(
            "Points reconciliation worker enabled",
            interval_seconds=reconciliation_worker.interval_seconds,
        )
    else:
        logger.info(
            "Points reconciliation worker disabled",
            reason="points_reconciliation_worker_enabled is false",
        )

    expiry_worker = PointsExpiryWorker(
        session_factory=_session_factory,
        interval_seconds=settings.points_expiry_interval_seconds,
    )
    app.state.points_expiry_worker = expiry_worker

    expiry_enabled = settings.points_expiry_worker_enabled
    if expiry_enabled:
        expiry_worker.start()
        logger.info("Points expiry worker enabled", interval_seconds=expiry_worker.interval_seconds)
    else:
        logger.info("Points expiry worker disabled", reason="points_expiry_worker_enabled is false")

    try:
        yield
    finally:
        if reconciliation_enabled and reconciliation_worker.is_running:
            await reconciliation_worker.stop()
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the AirCRM loyalty API."""
    configure_logging(
        service_name="aircrm-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="AirCRM Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="aircrm-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
