"""Worker wiring for periodic point expiry sweeps."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from loguru import logger

from aircrm_api.core.settings import settings
from aircrm_api.jobs.loyalty.expiry import run_points_expiry
from aircrm_api.jobs.loyalty.reconciliation import SessionFactory


class PointsExpiryWorker:
    """Periodically appends EXPIRED entries for lapsed earned points."""

    # meta: worker: points-expiry

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.points_expiry_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_summary: Dict[str, Any] | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Points expiry worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Points expiry worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        summary = await run_points_expiry(session_factory=self._session_factory)
        self.last_summary = summary
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Points expiry iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
