"""
Audit services for channel delivery attempts.

- AuditWriter: bounded queue drained by one background consumer, so the
  dispatch path never waits on audit inserts.
- EmailAuditService: read-side queries over the audit table.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bugnotify.audit.models import DeliveryStatus, EmailAudit
from bugnotify.errors import DataAccessError

logger = logging.getLogger(__name__)


@dataclass
class EmailAuditEntry:
    """In-memory audit record built by a dispatch task."""
    bug_id: int
    user_id: int
    recipient: str
    subject: str
    channel: str
    status: DeliveryStatus
    error_message: str = ""
    date_sent: datetime = field(default_factory=datetime.utcnow)

    def to_model(self) -> EmailAudit:
        return EmailAudit(
            bug_id=self.bug_id,
            user_id=self.user_id,
            recipient=self.recipient[:512],
            subject=self.subject[:255],
            channel=self.channel,
            status=DeliveryStatus(self.status).value,
            error_message=self.error_message or "",
            date_sent=self.date_sent,
        )


class AuditWriter:
    """
    Persists audit batches on a single background task.

    Usage:
        writer = AuditWriter(session_factory, max_pending=1000)
        await writer.start()
        await writer.submit(entries)   # returns once queued
        await writer.stop()            # drains, then stops the consumer
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_pending: int = 1000):
        self.session_factory = session_factory
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="audit-writer")
        logger.info("Audit writer started")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Audit writer stopped ({self.written} written, {self.failed} failed)")

    async def submit(self, entries: Sequence[EmailAuditEntry]) -> None:
        """Queue a batch. Waits only when the queue is full."""
        if not entries:
            return
        await self._queue.put(list(entries))

    async def drain(self) -> None:
        """Wait until every queued batch has been written (or failed)."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await self._write(batch)
                self.written += len(batch)
            except Exception:
                # The consumer must outlive a bad batch
                self.failed += len(batch)
                logger.exception(f"Failed to write {len(batch)} audit entries")
            finally:
                self._queue.task_done()

    async def _write(self, batch: List[EmailAuditEntry]) -> None:
        async with self.session_factory() as session:
            session.add_all([entry.to_model() for entry in batch])
            await session.commit()


class EmailAuditService:
    """Queries over the delivery audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def stats_for_bug(self, bug_id: int) -> List[Dict[str, Any]]:
        """Delivery counts for an issue grouped by channel and status."""
        try:
            result = await self.db.execute(
                select(EmailAudit.channel, EmailAudit.status, func.count(EmailAudit.id))
                .where(EmailAudit.bug_id == bug_id)
                .group_by(EmailAudit.channel, EmailAudit.status)
                .order_by(EmailAudit.channel, EmailAudit.status)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to load delivery stats for issue {bug_id}: {e}") from e
        return [
            {"channel": channel, "status": status, "count": count}
            for channel, status, count in result.all()
        ]

    async def recent_for_user(self, user_id: int, limit: int = 10) -> List[EmailAudit]:
        try:
            result = await self.db.execute(
                select(EmailAudit)
                .where(EmailAudit.user_id == user_id)
                .order_by(desc(EmailAudit.date_sent), desc(EmailAudit.id))
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to load deliveries for user {user_id}: {e}") from e
        return list(result.scalars().all())
