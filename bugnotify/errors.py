"""Error taxonomy for the notification core."""
from typing import Optional


class NotificationError(Exception):
    """Base class for notification core errors."""


class DataAccessError(NotificationError):
    """A store lookup or write failed.

    Always propagated: a failed recipient lookup means we don't know who to
    notify, which must never be read as "notify nobody".
    """


class ChannelError(NotificationError):
    """A channel transport call failed.

    ``str(error)`` is recorded verbatim in the audit entry.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChannelNotConfiguredError(ChannelError):
    """Channel credentials or endpoint are missing."""


class SubscriptionGoneError(ChannelError):
    """Push service reported the subscription as expired (404/410)."""

    def __init__(self, message: str, subscription_id: int, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.subscription_id = subscription_id


class PreferenceValidationError(NotificationError, ValueError):
    """A preference value is outside its permitted range."""
