"""
Digest Queue & Processor

Notifications routed to digest mode are stored as pending queue rows and
sent later as one aggregate message per user.

Processing claims rows before composing the digest:

    pending --(claim, batch_id)--> sending --> sent | failed

The claim is a conditional UPDATE on ``status = 'pending'``, so two
overlapping processor runs never send the same row twice. If sending
raises after the claim, the batch is marked failed before the error
propagates. Failed batches are not retried; they stay failed until the
retention sweep removes them.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError, PreferenceValidationError
from bugnotify.models import (
    DigestFrequency,
    DigestPreference,
    NotificationChannel,
    QueueStatus,
    QueuedNotification,
    User,
)

from .dispatch import DispatchReport, DispatchTarget, Dispatcher
from .filters import normalize_channels
from .subscriptions import WebPushSubscriptionStore
from .templates import build_digest_message

logger = logging.getLogger(__name__)

DEFAULT_DIGEST_PREFERENCE: Dict[str, Any] = {
    "enabled": False,
    "frequency": DigestFrequency.DAILY.value,
    "time_of_day": 9,
    "day_of_week": 1,
    "min_notifications": 1,
    "include_channels": [NotificationChannel.EMAIL.value],
}

DIGEST_PREFERENCE_FIELDS = set(DEFAULT_DIGEST_PREFERENCE)


def _setting(pref: Optional[DigestPreference], name: str) -> Any:
    value = getattr(pref, name, None) if pref is not None else None
    return DEFAULT_DIGEST_PREFERENCE[name] if value is None else value


# =============================================================================
# SCHEDULING
# =============================================================================

def next_digest_time(pref: Optional[DigestPreference], now: datetime) -> datetime:
    """
    Next digest slot strictly after ``now`` (UTC).

    hourly -> next top of the hour
    daily  -> time_of_day:00 today, else tomorrow
    weekly -> day_of_week (ISO, Monday=1) at time_of_day:00
    """
    frequency = DigestFrequency(_setting(pref, "frequency"))
    hour = int(_setting(pref, "time_of_day"))

    if frequency == DigestFrequency.HOURLY:
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    slot = now.replace(hour=hour, minute=0, second=0, microsecond=0)

    if frequency == DigestFrequency.DAILY:
        if slot <= now:
            slot += timedelta(days=1)
        return slot

    day_of_week = int(_setting(pref, "day_of_week"))
    slot += timedelta(days=(day_of_week - now.isoweekday()) % 7)
    if slot <= now:
        slot += timedelta(days=7)
    return slot


# =============================================================================
# PREFERENCES
# =============================================================================

async def get_digest_preferences(db: AsyncSession, user_id: int) -> Optional[DigestPreference]:
    try:
        return await db.get(DigestPreference, user_id)
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to load digest preferences for user {user_id}: {e}") from e


async def load_digest_preferences(
    db: AsyncSession,
    user_ids: Iterable[int],
) -> Dict[int, DigestPreference]:
    """Digest preferences for many users in a single query."""
    user_ids = list(user_ids)
    if not user_ids:
        return {}

    try:
        result = await db.execute(
            select(DigestPreference).where(DigestPreference.user_id.in_(user_ids))
        )
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to load digest preferences: {e}") from e
    return {pref.user_id: pref for pref in result.scalars().all()}


async def update_digest_preferences(
    db: AsyncSession,
    user_id: int,
    **changes: Any,
) -> DigestPreference:
    """Create or update a user's digest preference."""
    unknown = set(changes) - DIGEST_PREFERENCE_FIELDS
    if unknown:
        raise PreferenceValidationError(f"Unknown digest preference fields: {sorted(unknown)}")

    if "include_channels" in changes:
        changes["include_channels"] = normalize_channels(changes["include_channels"])

    pref = await get_digest_preferences(db, user_id)
    try:
        if pref is None:
            values = {**DEFAULT_DIGEST_PREFERENCE, **changes}
            values["include_channels"] = list(values["include_channels"])
            pref = DigestPreference(user_id=user_id, **values)
            db.add(pref)
        else:
            for key, value in changes.items():
                setattr(pref, key, value)

        pref.next_digest_at = next_digest_time(pref, datetime.utcnow()) if pref.enabled else None
        await db.flush()
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to save digest preferences for user {user_id}: {e}") from e

    logger.info(
        f"Digest preferences for user {user_id}: enabled={pref.enabled}, "
        f"frequency={pref.frequency}"
    )
    return pref


# =============================================================================
# QUEUE
# =============================================================================

class DigestQueue:
    """Stores notifications for a user's next digest."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue(
        self,
        user_id: int,
        bug_id: int,
        event_type: str,
        subject: str,
        body: str,
        now: Optional[datetime] = None,
        pref: Optional[DigestPreference] = None,
    ) -> QueuedNotification:
        """Queue one notification, scheduled for the user's next digest slot."""
        now = now or datetime.utcnow()
        if pref is None:
            pref = await get_digest_preferences(self.db, user_id)

        entry = QueuedNotification(
            user_id=user_id,
            bug_id=bug_id,
            event_type=getattr(event_type, "value", event_type),
            subject=subject[:255],
            body=body,
            status=QueueStatus.PENDING.value,
            created_at=now,
            scheduled_at=next_digest_time(pref, now),
        )
        try:
            self.db.add(entry)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to queue digest entry for user {user_id}: {e}") from e

        logger.debug(
            f"Queued issue {bug_id} ({entry.event_type}) for user {user_id}, "
            f"scheduled {entry.scheduled_at.isoformat()}"
        )
        return entry

    async def list_queued(
        self,
        user_id: int,
        status: Optional[QueueStatus] = QueueStatus.PENDING,
    ) -> List[QueuedNotification]:
        """Queue rows for a user, oldest first."""
        query = select(QueuedNotification).where(QueuedNotification.user_id == user_id)
        if status is not None:
            query = query.where(QueuedNotification.status == QueueStatus(status).value)
        query = query.order_by(QueuedNotification.created_at, QueuedNotification.id)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to list queued notifications for user {user_id}: {e}") from e
        return list(result.scalars().all())


# =============================================================================
# PROCESSOR
# =============================================================================

class DigestProcessor:
    """
    Batch job composing and sending due digests.

    Commits after each claim and after each batch is marked, so claimed rows
    are visible to any concurrent run.
    """

    def __init__(self, db: AsyncSession, dispatcher: Dispatcher, app_name: str = "Issue Tracker"):
        self.db = db
        self.dispatcher = dispatcher
        self.app_name = app_name

    async def _due_user_ids(self, now: datetime) -> List[int]:
        result = await self.db.execute(
            select(QueuedNotification.user_id)
            .where(QueuedNotification.status == QueueStatus.PENDING.value)
            .where(QueuedNotification.scheduled_at <= now)
            .distinct()
            .order_by(QueuedNotification.user_id)
        )
        return [row[0] for row in result.all()]

    async def _pending_ids(self, user_id: int, now: datetime) -> List[int]:
        result = await self.db.execute(
            select(QueuedNotification.id)
            .where(QueuedNotification.user_id == user_id)
            .where(QueuedNotification.status == QueueStatus.PENDING.value)
            .where(QueuedNotification.created_at <= now)
            .order_by(QueuedNotification.created_at, QueuedNotification.id)
        )
        return [row[0] for row in result.all()]

    async def _claim(self, entry_ids: List[int]) -> tuple[str, List[QueuedNotification]]:
        batch_id = uuid.uuid4().hex
        await self.db.execute(
            update(QueuedNotification)
            .where(QueuedNotification.id.in_(entry_ids))
            .where(QueuedNotification.status == QueueStatus.PENDING.value)
            .values(status=QueueStatus.SENDING.value, batch_id=batch_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(QueuedNotification)
            .where(QueuedNotification.batch_id == batch_id)
            .order_by(QueuedNotification.created_at, QueuedNotification.id)
            .execution_options(populate_existing=True)
        )
        return batch_id, list(result.scalars().all())

    async def _finish(self, batch_id: str, status: QueueStatus, sent_at: Optional[datetime]) -> None:
        values: Dict[str, Any] = {"status": status.value}
        if sent_at is not None:
            values["sent_at"] = sent_at
        await self.db.execute(
            update(QueuedNotification)
            .where(QueuedNotification.batch_id == batch_id)
            .where(QueuedNotification.status == QueueStatus.SENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _release(self, batch_id: str) -> None:
        await self.db.execute(
            update(QueuedNotification)
            .where(QueuedNotification.batch_id == batch_id)
            .where(QueuedNotification.status == QueueStatus.SENDING.value)
            .values(status=QueueStatus.PENDING.value, batch_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _targets(self, user_id: int, channels: List[str]) -> List[DispatchTarget]:
        """One dispatch target per included channel the user can receive on."""
        user = await self.db.get(User, user_id)
        email = (user.email or "").strip() if user is not None and user.enabled else ""

        webpush = []
        if NotificationChannel.WEBPUSH.value in channels:
            store = WebPushSubscriptionStore(self.db)
            webpush = (await store.active_for_users([user_id])).get(user_id, [])

        targets = []
        for channel in channels:
            if channel == NotificationChannel.EMAIL.value and email:
                targets.append(DispatchTarget(user_id, email=email))
            elif channel == NotificationChannel.PUSHOVER.value:
                targets.append(DispatchTarget(user_id, pushover=True))
            elif channel == NotificationChannel.ROCKETCHAT.value:
                targets.append(DispatchTarget(user_id, rocketchat=True))
            elif channel == NotificationChannel.TEAMS.value:
                targets.append(DispatchTarget(user_id, teams=True))
            elif channel == NotificationChannel.WEBPUSH.value and webpush:
                targets.append(DispatchTarget(user_id, webpush=webpush))
        return targets

    async def process_pending_digests(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Send every due digest.

        Users whose digest preference is explicitly disabled are skipped and
        their rows stay pending. Batches below min_notifications are left
        pending for a later run.

        Returns summary of the run.
        """
        now = now or datetime.utcnow()
        summary: Dict[str, Any] = {
            "users_due": 0,
            "digests_sent": 0,
            "digests_failed": 0,
            "notifications_sent": 0,
            "notifications_failed": 0,
            "skipped_below_threshold": 0,
            "skipped_disabled": 0,
        }

        try:
            user_ids = await self._due_user_ids(now)
            summary["users_due"] = len(user_ids)
            preferences = await load_digest_preferences(self.db, user_ids)

            for user_id in user_ids:
                pref = preferences.get(user_id)
                if pref is not None and not pref.enabled:
                    summary["skipped_disabled"] += 1
                    continue
                await self._process_user(user_id, pref, now, summary)
        except SQLAlchemyError as e:
            raise DataAccessError(f"Digest processing failed: {e}") from e

        logger.info(
            f"Digest run at {now.isoformat()}: {summary['digests_sent']} sent, "
            f"{summary['digests_failed']} failed, "
            f"{summary['skipped_below_threshold']} below threshold"
        )
        return summary

    async def _process_user(
        self,
        user_id: int,
        pref: Optional[DigestPreference],
        now: datetime,
        summary: Dict[str, Any],
    ) -> None:
        min_notifications = int(_setting(pref, "min_notifications"))

        entry_ids = await self._pending_ids(user_id, now)
        if len(entry_ids) < min_notifications:
            logger.debug(
                f"User {user_id}: {len(entry_ids)} pending < {min_notifications}, waiting"
            )
            summary["skipped_below_threshold"] += 1
            return

        targets = await self._targets(user_id, list(_setting(pref, "include_channels")))

        batch_id, entries = await self._claim(entry_ids)
        if len(entries) < min_notifications:
            # Another run took part of this batch
            await self._release(batch_id)
            summary["skipped_below_threshold"] += 1
            return

        try:
            await self._send_batch(user_id, pref, batch_id, entries, targets, now, summary)
        except Exception:
            logger.exception(f"Digest batch {batch_id} for user {user_id} aborted, marking failed")
            await self.db.rollback()
            await self._finish(batch_id, QueueStatus.FAILED, sent_at=None)
            await self.db.commit()
            raise

    async def _send_batch(
        self,
        user_id: int,
        pref: Optional[DigestPreference],
        batch_id: str,
        entries: List[QueuedNotification],
        targets: List[DispatchTarget],
        now: datetime,
        summary: Dict[str, Any],
    ) -> None:
        subject, html_body, text_body = build_digest_message(entries, self.app_name)

        reports: List[DispatchReport] = []
        for target in targets:
            reports.append(
                await self.dispatcher.dispatch([target], subject, text_body, html_body)
            )
        delivered = any(report.any_success for report in reports)

        if delivered:
            await self._finish(batch_id, QueueStatus.SENT, sent_at=now)
            summary["digests_sent"] += 1
            summary["notifications_sent"] += len(entries)
        else:
            await self._finish(batch_id, QueueStatus.FAILED, sent_at=None)
            summary["digests_failed"] += 1
            summary["notifications_failed"] += len(entries)
            logger.warning(
                f"Digest batch {batch_id} for user {user_id} failed on every channel"
            )

        expired = [sid for report in reports for sid in report.expired_subscriptions]
        if expired:
            await WebPushSubscriptionStore(self.db).disable(expired)

        if pref is not None:
            if delivered:
                pref.last_digest_sent_at = now
            pref.next_digest_at = next_digest_time(pref, now)

        await self.db.commit()

    async def cleanup_old_digests(self, days: int = 30, now: Optional[datetime] = None) -> int:
        """
        Delete queue rows created more than ``days`` ago, whatever their
        status. A ``sending`` row that old belongs to a run that died after
        claiming it.

        Returns number of rows deleted.
        """
        cutoff = (now or datetime.utcnow()) - timedelta(days=days)
        try:
            result = await self.db.execute(
                delete(QueuedNotification)
                .where(QueuedNotification.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Digest cleanup failed: {e}") from e

        deleted = result.rowcount or 0
        logger.info(f"Removed {deleted} queued notifications older than {days} days")
        return deleted
