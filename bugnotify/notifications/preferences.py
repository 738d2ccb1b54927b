"""
Preference Checker

Pure eligibility decision for one user and one issue event, plus the batch
loader that turns preference rows into checker input.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError
from bugnotify.models import NotificationEventType, NotificationPreference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventPreference:
    """Enable flag and severity threshold for one event type."""
    enabled: bool
    min_severity: int


@dataclass(frozen=True)
class PreferenceRecord:
    """A user's preferences keyed by event type."""
    user_id: int
    events: Mapping[NotificationEventType, EventPreference] = field(default_factory=dict)


@dataclass(frozen=True)
class PreferenceDecision:
    should_notify: bool
    reason: str


def to_preference_record(pref: NotificationPreference) -> PreferenceRecord:
    """Map a preference row onto its per-event-type record."""
    return PreferenceRecord(
        user_id=pref.user_id,
        events={
            NotificationEventType.NEW: EventPreference(
                bool(pref.email_on_new), pref.email_on_new_min_severity),
            NotificationEventType.ASSIGNED: EventPreference(
                bool(pref.email_on_assigned), pref.email_on_assigned_min_severity),
            NotificationEventType.FEEDBACK: EventPreference(
                bool(pref.email_on_feedback), pref.email_on_feedback_min_severity),
            NotificationEventType.RESOLVED: EventPreference(
                bool(pref.email_on_resolved), pref.email_on_resolved_min_severity),
            NotificationEventType.CLOSED: EventPreference(
                bool(pref.email_on_closed), pref.email_on_closed_min_severity),
            NotificationEventType.REOPENED: EventPreference(
                bool(pref.email_on_reopened), pref.email_on_reopened_min_severity),
            NotificationEventType.BUGNOTE: EventPreference(
                bool(pref.email_on_bugnote), pref.email_on_bugnote_min_severity),
            NotificationEventType.STATUS: EventPreference(
                bool(pref.email_on_status), pref.email_on_status_min_severity),
            NotificationEventType.PRIORITY: EventPreference(
                bool(pref.email_on_priority), pref.email_on_priority_min_severity),
        },
    )


def decide(
    event_type: NotificationEventType,
    issue_severity: int,
    preference: Optional[PreferenceRecord],
) -> PreferenceDecision:
    """
    Decide whether a user should be notified about an event.

    No preference record means no notifications.
    """
    event_type = NotificationEventType(event_type)

    if preference is None:
        return PreferenceDecision(False, "No notification preferences configured")

    event_pref = preference.events.get(event_type)
    if event_pref is None or event_pref.enabled is not True:
        return PreferenceDecision(
            False, f"{event_type.value} notifications disabled in preferences"
        )

    if issue_severity < event_pref.min_severity:
        return PreferenceDecision(
            False, f"Severity {issue_severity} below threshold {event_pref.min_severity}"
        )

    return PreferenceDecision(
        True,
        f"{event_type.value} notifications enabled, "
        f"severity {issue_severity} >= {event_pref.min_severity}",
    )


async def load_preferences(
    db: AsyncSession,
    user_ids: Iterable[int],
) -> Dict[int, PreferenceRecord]:
    """Load preference records for many users in a single query."""
    user_ids = list(user_ids)
    if not user_ids:
        return {}

    try:
        result = await db.execute(
            select(NotificationPreference)
            .where(NotificationPreference.user_id.in_(user_ids))
        )
    except SQLAlchemyError as e:
        raise DataAccessError(f"Failed to load notification preferences: {e}") from e

    records = {pref.user_id: to_preference_record(pref) for pref in result.scalars().all()}
    logger.debug(f"Loaded preferences for {len(records)}/{len(user_ids)} users")
    return records
