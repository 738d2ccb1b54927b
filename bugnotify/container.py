"""
Composition root.

Builds every long-lived collaborator once at application start and tears
them down at shutdown: database engine, shared HTTP client, channel
transports, audit writer, dispatcher and digest scheduler.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from bugnotify.audit.services import AuditWriter
from bugnotify.config import Settings
from bugnotify.database import Database
from bugnotify.notifications.channels import ChannelTransport, build_transports
from bugnotify.notifications.dispatch import Dispatcher
from bugnotify.notifications.scheduler import DigestScheduler
from bugnotify.notifications.service import IssueActionContext, NotificationService

logger = logging.getLogger(__name__)


class AppContainer:
    """Owns the process-wide clients and their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transports: Optional[Dict[str, ChannelTransport]] = None,
    ):
        self.settings = settings
        self.database = database or Database(settings.DATABASE_URL)
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.CHANNEL_TIMEOUT_SECONDS
        )
        self.transports = (
            transports if transports is not None
            else build_transports(settings, self.http_client)
        )
        self.audit_writer = AuditWriter(
            self.database.session_factory, max_pending=settings.AUDIT_QUEUE_SIZE
        )
        self.dispatcher = Dispatcher(
            self.transports,
            audit_writer=self.audit_writer,
            timeout=settings.CHANNEL_TIMEOUT_SECONDS,
        )
        self.digest_scheduler = DigestScheduler(
            self.database.session_factory,
            self.dispatcher,
            retention_days=settings.DIGEST_RETENTION_DAYS,
            history_retention_days=settings.HISTORY_RETENTION_DAYS,
            app_name=settings.EMAIL_FROM_NAME,
        )

    async def start(self) -> None:
        await self.audit_writer.start()
        logger.info(f"Notification channels enabled: {', '.join(self.transports) or 'none'}")

    async def aclose(self) -> None:
        await self.audit_writer.stop()
        await self.http_client.aclose()
        await self.database.dispose()

    async def notify_issue_action(self, ctx: IssueActionContext) -> Dict[str, Any]:
        """Run issue-action orchestration in its own session."""
        async with self.database.session_factory() as db:
            service = NotificationService(db, self.dispatcher, self.settings)
            try:
                outcome = await service.notify_issue_action(ctx)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        return outcome


def build_container(settings: Settings) -> AppContainer:
    return AppContainer(settings)
