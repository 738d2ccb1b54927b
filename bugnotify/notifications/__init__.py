"""
Notification core.

Decides who hears about an issue event, on which channels, immediately or
in a digest, and records every delivery attempt.
"""
from .preferences import PreferenceDecision, decide, load_preferences
from .recipients import IssueSnapshot, NotificationRecipient, RecipientResolver
from .filters import FilterDecision, FilterEngine
from .dispatch import DispatchReport, DispatchTarget, Dispatcher
from .digest import DigestProcessor, DigestQueue, next_digest_time, update_digest_preferences
from .subscriptions import WebPushSubscriptionStore
from .service import IssueAction, IssueActionContext, NotificationService
from .scheduler import DigestScheduler

__all__ = [
    "PreferenceDecision",
    "decide",
    "load_preferences",
    "IssueSnapshot",
    "NotificationRecipient",
    "RecipientResolver",
    "FilterDecision",
    "FilterEngine",
    "DispatchReport",
    "DispatchTarget",
    "Dispatcher",
    "DigestProcessor",
    "DigestQueue",
    "next_digest_time",
    "update_digest_preferences",
    "WebPushSubscriptionStore",
    "IssueAction",
    "IssueActionContext",
    "NotificationService",
    "DigestScheduler",
]
