"""
Notification History

Per-user inbox of notifications that were delivered immediately.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError
from bugnotify.models import NotificationHistory

logger = logging.getLogger(__name__)


async def log_history(
    db: AsyncSession,
    user_id: int,
    bug_id: int,
    event_type: str,
    subject: str,
    body: str = "",
    channels_sent: Optional[Sequence[str]] = None,
    date_sent: Optional[datetime] = None,
) -> NotificationHistory:
    entry = NotificationHistory(
        user_id=user_id,
        bug_id=bug_id,
        event_type=getattr(event_type, "value", event_type),
        subject=subject[:255],
        body=body,
        channels_sent=list(channels_sent or []),
        read=False,
        date_sent=date_sent or datetime.utcnow(),
    )
    try:
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to record notification history for user {user_id}: {e}") from e
    return entry


async def list_history(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
    event_type: Optional[str] = None,
    bug_id: Optional[int] = None,
) -> List[NotificationHistory]:
    """User's history, newest first."""
    query = select(NotificationHistory).where(NotificationHistory.user_id == user_id)
    if unread_only:
        query = query.where(NotificationHistory.read.is_(False))
    if event_type:
        query = query.where(NotificationHistory.event_type == getattr(event_type, "value", event_type))
    if bug_id is not None:
        query = query.where(NotificationHistory.bug_id == bug_id)
    query = (
        query.order_by(NotificationHistory.date_sent.desc(), NotificationHistory.id.desc())
        .limit(limit)
        .offset(offset)
    )

    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to list notification history for user {user_id}: {e}") from e
    return list(result.scalars().all())


async def unread_count(db: AsyncSession, user_id: int) -> int:
    try:
        result = await db.execute(
            select(func.count(NotificationHistory.id))
            .where(NotificationHistory.user_id == user_id)
            .where(NotificationHistory.read.is_(False))
        )
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to count unread notifications for user {user_id}: {e}") from e
    return result.scalar_one()


async def mark_read(db: AsyncSession, history_id: int, user_id: int) -> bool:
    """Mark one entry read. Only the owning user's entries are touched."""
    try:
        result = await db.execute(
            update(NotificationHistory)
            .where(NotificationHistory.id == history_id)
            .where(NotificationHistory.user_id == user_id)
            .where(NotificationHistory.read.is_(False))
            .values(read=True, date_read=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to mark notification {history_id} read: {e}") from e
    return result.rowcount > 0


async def mark_all_read(db: AsyncSession, user_id: int) -> int:
    try:
        result = await db.execute(
            update(NotificationHistory)
            .where(NotificationHistory.user_id == user_id)
            .where(NotificationHistory.read.is_(False))
            .values(read=True, date_read=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to mark notifications read for user {user_id}: {e}") from e
    return result.rowcount


async def history_stats(
    db: AsyncSession,
    user_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Totals, per-event-type and per-channel counts, and recent activity."""
    now = now or datetime.utcnow()
    try:
        result = await db.execute(
            select(
                NotificationHistory.event_type,
                NotificationHistory.channels_sent,
                NotificationHistory.read,
                NotificationHistory.date_sent,
            ).where(NotificationHistory.user_id == user_id)
        )
        rows = result.all()
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to compute history stats for user {user_id}: {e}") from e

    by_event_type: Dict[str, int] = {}
    by_channel: Dict[str, int] = {}
    recent = {"last_24h": 0, "last_7d": 0, "last_30d": 0}
    unread = 0

    for event_type, channels_sent, read, date_sent in rows:
        by_event_type[event_type] = by_event_type.get(event_type, 0) + 1
        for channel in channels_sent or []:
            by_channel[channel] = by_channel.get(channel, 0) + 1
        if not read:
            unread += 1
        age = now - date_sent
        if age <= timedelta(days=1):
            recent["last_24h"] += 1
        if age <= timedelta(days=7):
            recent["last_7d"] += 1
        if age <= timedelta(days=30):
            recent["last_30d"] += 1

    return {
        "total": len(rows),
        "unread": unread,
        "read": len(rows) - unread,
        "by_event_type": by_event_type,
        "by_channel": by_channel,
        "recent": recent,
    }


async def cleanup_old_history(
    db: AsyncSession,
    user_id: Optional[int] = None,
    days_old: int = 90,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete read entries sent more than ``days_old`` ago.

    Unread entries are kept however old they are. With no ``user_id`` every
    user's inbox is swept.

    Returns number of entries deleted.
    """
    cutoff = (now or datetime.utcnow()) - timedelta(days=days_old)
    query = (
        delete(NotificationHistory)
        .where(NotificationHistory.date_sent < cutoff)
        .where(NotificationHistory.read.is_(True))
    )
    if user_id is not None:
        query = query.where(NotificationHistory.user_id == user_id)

    try:
        result = await db.execute(query.execution_options(synchronize_session=False))
    except SQLAlchemyError as e:
        raise DataAccessError(f"Notification history cleanup failed: {e}") from e

    deleted = result.rowcount or 0
    scope = f"user {user_id}" if user_id is not None else "all users"
    logger.info(f"Removed {deleted} read history entries older than {days_old} days for {scope}")
    return deleted


async def issue_timeline(db: AsyncSession, bug_id: int) -> Dict[str, Any]:
    """
    Notifications sent about one issue, oldest first.

    Entries sharing an event type and send time are one notification round;
    each timeline item counts the recipients of that round.
    """
    try:
        result = await db.execute(
            select(
                NotificationHistory.user_id,
                NotificationHistory.event_type,
                NotificationHistory.subject,
                NotificationHistory.date_sent,
            )
            .where(NotificationHistory.bug_id == bug_id)
            .order_by(NotificationHistory.date_sent, NotificationHistory.id)
        )
        rows = result.all()
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to load notification timeline for issue {bug_id}: {e}") from e

    timeline: Dict[tuple, Dict[str, Any]] = {}
    for user_id, event_type, subject, date_sent in rows:
        key = (event_type, date_sent.replace(microsecond=0))
        if key not in timeline:
            timeline[key] = {
                "event_type": event_type,
                "subject": subject,
                "recipient_count": 0,
                "date_sent": key[1],
            }
        timeline[key]["recipient_count"] += 1

    return {
        "notification_count": len(rows),
        "unique_recipients": len({row[0] for row in rows}),
        "timeline": list(timeline.values()),
    }
