"""
Consolidated models package.

IMPORTANT: Explicit imports only - no wildcards to prevent circular imports.
Use string-based forward references in relationships: relationship("User", ...)
"""

# Tracker tables (read-only for the notification core)
from bugnotify.models.tracker import User, ProjectMembership, Issue

# Notification models
from bugnotify.models.notification import (
    MIN_SEVERITY_FLOOR,
    MIN_SEVERITY_CEILING,
    NotificationEventType,
    NotificationChannel,
    FilterType,
    FilterAction,
    DigestFrequency,
    QueueStatus,
    NotificationPreference,
    NotificationFilter,
    DigestPreference,
    QueuedNotification,
    WebPushSubscription,
    NotificationHistory,
)

# Audit models
from bugnotify.audit.models import DeliveryStatus, EmailAudit

__all__ = [
    "User",
    "ProjectMembership",
    "Issue",
    "MIN_SEVERITY_FLOOR",
    "MIN_SEVERITY_CEILING",
    "NotificationEventType",
    "NotificationChannel",
    "FilterType",
    "FilterAction",
    "DigestFrequency",
    "QueueStatus",
    "NotificationPreference",
    "NotificationFilter",
    "DigestPreference",
    "QueuedNotification",
    "WebPushSubscription",
    "NotificationHistory",
    "DeliveryStatus",
    "EmailAudit",
]
