"""
Notification Models

Database models for the notification core: per-user preferences, custom
filters, digest configuration, the digest queue, web-push subscriptions and
the in-app notification history.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column,
    String,
    Text,
    DateTime,
    Boolean,
    Integer,
    ForeignKey,
    JSON,
    Index,
)
from sqlalchemy.orm import validates

from bugnotify.database import Base
from bugnotify.errors import PreferenceValidationError

MIN_SEVERITY_FLOOR = 10   # feature
MIN_SEVERITY_CEILING = 80  # block


class NotificationEventType(str, Enum):
    """Issue lifecycle changes a user can subscribe to."""
    NEW = "new"
    ASSIGNED = "assigned"
    FEEDBACK = "feedback"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    BUGNOTE = "bugnote"
    STATUS = "status"
    PRIORITY = "priority"


class NotificationChannel(str, Enum):
    """Delivery transports."""
    EMAIL = "email"
    PUSHOVER = "pushover"
    ROCKETCHAT = "rocketchat"
    TEAMS = "teams"
    WEBPUSH = "webpush"


class FilterType(str, Enum):
    CATEGORY = "category"
    PRIORITY = "priority"
    SEVERITY = "severity"
    TAG = "tag"
    PROJECT = "project"
    CUSTOM = "custom"


class FilterAction(str, Enum):
    NOTIFY = "notify"
    IGNORE = "ignore"
    DIGEST_ONLY = "digest_only"


class DigestFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class QueueStatus(str, Enum):
    """Lifecycle of a queued digest item.

    pending -> sending (claimed by a processor run) -> sent | failed.
    """
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class NotificationPreference(Base):
    """
    Per-user email-on-event flags and severity thresholds.

    A missing row means the user receives no notifications at all.
    """
    __tablename__ = "notification_preferences"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    email_on_new = Column(Boolean, nullable=False, default=True)
    email_on_assigned = Column(Boolean, nullable=False, default=True)
    email_on_feedback = Column(Boolean, nullable=False, default=True)
    email_on_resolved = Column(Boolean, nullable=False, default=True)
    email_on_closed = Column(Boolean, nullable=False, default=True)
    email_on_reopened = Column(Boolean, nullable=False, default=True)
    email_on_bugnote = Column(Boolean, nullable=False, default=True)
    email_on_status = Column(Boolean, nullable=False, default=False)
    email_on_priority = Column(Boolean, nullable=False, default=False)

    email_on_new_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_assigned_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_feedback_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_resolved_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_closed_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_reopened_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_bugnote_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_status_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)
    email_on_priority_min_severity = Column(Integer, nullable=False, default=MIN_SEVERITY_FLOOR)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @validates(
        "email_on_new_min_severity",
        "email_on_assigned_min_severity",
        "email_on_feedback_min_severity",
        "email_on_resolved_min_severity",
        "email_on_closed_min_severity",
        "email_on_reopened_min_severity",
        "email_on_bugnote_min_severity",
        "email_on_status_min_severity",
        "email_on_priority_min_severity",
    )
    def _validate_min_severity(self, key, value):
        value = int(value)
        if value > MIN_SEVERITY_CEILING:
            raise PreferenceValidationError(
                f"{key} must be at most {MIN_SEVERITY_CEILING}, got {value}"
            )
        # Below-floor thresholds are clamped, never stored
        return max(value, MIN_SEVERITY_FLOOR)


class NotificationFilter(Base):
    """
    User-defined rule narrowing or rerouting notifications.

    project_id == 0 marks a global filter.
    """
    __tablename__ = "notification_filters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)

    filter_type = Column(String(32), nullable=False)   # FilterType value
    filter_value = Column(String(255), nullable=False, default="")
    action = Column(String(32), nullable=False, default=FilterAction.NOTIFY.value)
    channels = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_filters_user_project", "user_id", "project_id"),
    )

    @validates("filter_type")
    def _validate_filter_type(self, key, value):
        try:
            return FilterType(value).value
        except ValueError:
            raise PreferenceValidationError(f"Unknown filter type: {value}")

    @validates("action")
    def _validate_action(self, key, value):
        try:
            return FilterAction(value).value
        except ValueError:
            raise PreferenceValidationError(f"Unknown filter action: {value}")


class DigestPreference(Base):
    """One digest configuration per user."""
    __tablename__ = "digest_preferences"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    frequency = Column(String(16), nullable=False, default=DigestFrequency.DAILY.value)
    time_of_day = Column(Integer, nullable=False, default=9)    # 0-23, UTC
    day_of_week = Column(Integer, nullable=False, default=1)    # 1-7, ISO Monday=1
    min_notifications = Column(Integer, nullable=False, default=1)
    include_channels = Column(JSON, nullable=False, default=lambda: [NotificationChannel.EMAIL.value])

    last_digest_sent_at = Column(DateTime, nullable=True)
    next_digest_at = Column(DateTime, nullable=True)

    @validates("frequency")
    def _validate_frequency(self, key, value):
        try:
            return DigestFrequency(value).value
        except ValueError:
            raise PreferenceValidationError(f"Unknown digest frequency: {value}")

    @validates("time_of_day")
    def _validate_time_of_day(self, key, value):
        if not 0 <= int(value) <= 23:
            raise PreferenceValidationError(f"time_of_day must be 0-23, got {value}")
        return int(value)

    @validates("day_of_week")
    def _validate_day_of_week(self, key, value):
        if not 1 <= int(value) <= 7:
            raise PreferenceValidationError(f"day_of_week must be 1-7, got {value}")
        return int(value)

    @validates("min_notifications")
    def _validate_min_notifications(self, key, value):
        if int(value) < 1:
            raise PreferenceValidationError(f"min_notifications must be >= 1, got {value}")
        return int(value)


class QueuedNotification(Base):
    """
    A rendered notification waiting for the recipient's next digest.

    Immutable once status leaves pending, except for sent_at.
    """
    __tablename__ = "notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    bug_id = Column(Integer, nullable=False)
    event_type = Column(String(32), nullable=False)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)

    status = Column(String(16), nullable=False, default=QueueStatus.PENDING.value)
    batch_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_queue_user_status", "user_id", "status"),
        Index("ix_notification_queue_status_scheduled", "status", "scheduled_at"),
    )


class WebPushSubscription(Base):
    """Browser push endpoint registered by a user."""
    __tablename__ = "webpush_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint = Column(String(512), unique=True, nullable=False)
    p256dh_key = Column(String(255), nullable=False)
    auth_key = Column(String(255), nullable=False)
    user_agent = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_used_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class NotificationHistory(Base):
    """In-app record of notifications delivered to a user."""
    __tablename__ = "notification_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    bug_id = Column(Integer, nullable=False)
    event_type = Column(String(32), nullable=False)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    channels_sent = Column(JSON, nullable=False, default=list)

    read = Column(Boolean, nullable=False, default=False)
    date_sent = Column(DateTime, default=datetime.utcnow, nullable=False)
    date_read = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_history_user_read", "user_id", "read"),
    )
