"""
Periodic forecast learning for every known user.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from ..config import get_settings
from ..infrastructure import DocumentStore, get_document_store
from ..infrastructure.stores import UserRegistry
from ..utils.exceptions import AppException
from .forecast_learning import ForecastLearningService

logger = structlog.get_logger()


class LearningScheduler:
    """Runs the full learning cycle for all users on a fixed interval."""

    def __init__(self, db: Optional[DocumentStore] = None, learning: Optional[ForecastLearningService] = None):
        self.settings = get_settings()
        self.db = db or get_document_store()
        self.learning = learning or ForecastLearningService(self.db)
        self.registry = UserRegistry(self.db)
        self.last_run: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> Dict[str, Any]:
        """One pass over every known user. A failure for one user does not stop the others."""
        stats = {"users_checked": 0, "cycles_completed": 0, "cycles_failed": 0}
        for user_id in await self.registry.list_users():
            stats["users_checked"] += 1
            try:
                await self.learning.run_cycle(user_id)
                stats["cycles_completed"] += 1
            except AppException as e:
                stats["cycles_failed"] += 1
                logger.error("Learning cycle failed", user_id=user_id, error=e.message, code=e.code)
            except Exception as e:
                stats["cycles_failed"] += 1
                logger.exception("Unexpected error in learning cycle", user_id=user_id, error=str(e))

        self.last_run = datetime.utcnow()
        logger.info("Scheduled learning pass completed", **stats)
        return stats

    async def _loop(self) -> None:
        interval = self.settings.learning_interval_hours * 3600
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("Scheduled learning pass failed", error=str(e))
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Learning scheduler started", interval_hours=self.settings.learning_interval_hours)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Learning scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
