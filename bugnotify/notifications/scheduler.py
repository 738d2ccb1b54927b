"""
Digest Scheduler

Entry point for the external cron trigger:
- Every run: send due digests
- Once per UTC day: retention sweep of the digest queue and of read
  notification history

The scheduler itself never sleeps or loops; the trigger decides the cadence.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .digest import DigestProcessor
from .dispatch import Dispatcher
from .history import cleanup_old_history

logger = logging.getLogger(__name__)


class DigestScheduler:
    """
    Runs digest processing on demand and tracks the daily cleanup.

    Usage:
        scheduler = DigestScheduler(session_factory, dispatcher, retention_days=30)
        summary = await scheduler.run()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        retention_days: int = 30,
        history_retention_days: int = 90,
        app_name: str = "Issue Tracker",
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.retention_days = retention_days
        self.history_retention_days = history_retention_days
        self.app_name = app_name
        self._last_run: Optional[datetime] = None
        self._last_cleanup_date: Optional[date] = None

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Process pending digests, then clean up if not yet done today.

        Returns summary of the run. Data-access errors propagate.
        """
        now = now or datetime.utcnow()
        logger.info("Starting digest run")
        self._last_run = now

        summary: Dict[str, Any] = {
            "started_at": now.isoformat(),
            "cleaned_up": None,
            "history_cleaned_up": None,
        }

        async with self.session_factory() as db:
            processor = DigestProcessor(db, self.dispatcher, app_name=self.app_name)
            summary.update(await processor.process_pending_digests(now))

            if self._last_cleanup_date != now.date():
                summary["cleaned_up"] = await processor.cleanup_old_digests(self.retention_days, now=now)
                summary["history_cleaned_up"] = await cleanup_old_history(
                    db, days_old=self.history_retention_days, now=now
                )
                await db.commit()
                self._last_cleanup_date = now.date()

        summary["completed_at"] = datetime.utcnow().isoformat()
        logger.info(
            f"Digest run completed: {summary['digests_sent']} sent, "
            f"{summary['digests_failed']} failed"
        )
        return summary
