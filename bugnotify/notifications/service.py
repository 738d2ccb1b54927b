"""
Notification Service

Entry point for issue mutation handlers. Turns one issue action into
notifications:

    Recipient Resolver -> Filter Engine -> immediate Dispatch | Digest Queue
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.config import Settings
from bugnotify.models import FilterAction, NotificationChannel, NotificationEventType

from .digest import DigestQueue, load_digest_preferences
from .dispatch import DispatchTarget, Dispatcher
from .filters import FilterEngine
from .history import log_history
from .recipients import RecipientResolver
from .subscriptions import WebPushSubscriptionStore
from .templates import build_issue_notification

logger = logging.getLogger(__name__)

# Tracker status codes
STATUS_FEEDBACK = 20
STATUS_RESOLVED = 80
STATUS_CLOSED = 90


class IssueAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    COMMENTED = "commented"
    DELETED = "deleted"


@dataclass
class IssueActionContext:
    """What an issue mutation handler reports after a change."""
    issue_id: int
    issue_summary: str
    project_id: int
    action: IssueAction
    actor_id: int
    actor_name: str
    changes: Optional[str] = None
    old_status: Optional[int] = None
    new_status: Optional[int] = None
    priority_changed: bool = False


def event_type_for_action(ctx: IssueActionContext) -> NotificationEventType:
    """Map an issue action onto the event type preferences are keyed on."""
    action = IssueAction(ctx.action)

    if action == IssueAction.CREATED:
        return NotificationEventType.NEW
    if action == IssueAction.ASSIGNED:
        return NotificationEventType.ASSIGNED
    if action == IssueAction.COMMENTED:
        return NotificationEventType.BUGNOTE
    if action == IssueAction.UPDATED:
        return NotificationEventType.PRIORITY if ctx.priority_changed else NotificationEventType.STATUS

    if action == IssueAction.STATUS_CHANGED:
        if ctx.new_status == STATUS_RESOLVED:
            return NotificationEventType.RESOLVED
        if ctx.new_status == STATUS_CLOSED:
            return NotificationEventType.CLOSED
        if ctx.new_status == STATUS_FEEDBACK:
            return NotificationEventType.FEEDBACK
        if (
            ctx.old_status is not None
            and ctx.new_status is not None
            and ctx.old_status >= STATUS_RESOLVED
            and ctx.new_status < STATUS_RESOLVED
        ):
            return NotificationEventType.REOPENED

    return NotificationEventType.STATUS


class NotificationService:
    """
    Orchestrates notifications for issue actions.

    Usage:
        service = NotificationService(db, dispatcher, settings)
        outcome = await service.notify_issue_action(ctx)
    """

    def __init__(self, db: AsyncSession, dispatcher: Dispatcher, settings: Settings):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings

    def _issue_url(self, issue_id: int) -> str:
        return f"{self.settings.APP_BASE_URL.rstrip('/')}/issues/{issue_id}"

    async def notify_issue_action(self, ctx: IssueActionContext) -> Dict[str, Any]:
        """
        Notify everyone eligible about an issue action.

        Delivery failures never raise; lookup failures do.

        Returns {recipients, immediate, queued, ignored}.
        """
        outcome = {"recipients": 0, "immediate": 0, "queued": 0, "ignored": 0}
        event_type = event_type_for_action(ctx)

        resolver = RecipientResolver(self.db, email_enabled=self.settings.EMAIL_ENABLED)
        issue = await resolver.load_issue(ctx.issue_id)
        if issue is None:
            logger.info(f"Issue {ctx.issue_id} not found, skipping {ctx.action} notifications")
            return outcome

        recipients = [
            r for r in await resolver.resolve_for_issue(issue, event_type)
            if r.will_receive and r.id != ctx.actor_id
        ]
        outcome["recipients"] = len(recipients)
        if not recipients:
            return outcome

        issue_url = self._issue_url(ctx.issue_id)
        subject, html_body, text_body = build_issue_notification(
            issue_id=ctx.issue_id,
            issue_summary=ctx.issue_summary or issue.summary,
            action=IssueAction(ctx.action).value,
            actor_name=ctx.actor_name,
            issue_url=issue_url,
            app_name=self.settings.EMAIL_FROM_NAME,
            changes=ctx.changes,
        )

        enabled_channels = self.settings.enabled_channels
        user_ids = [r.id for r in recipients]
        digest_prefs = await load_digest_preferences(self.db, user_ids)
        subscription_store = WebPushSubscriptionStore(self.db)
        subscriptions = {}
        if NotificationChannel.WEBPUSH.value in enabled_channels:
            subscriptions = await subscription_store.active_for_users(user_ids)

        filter_engine = FilterEngine(self.db)
        digest_queue = DigestQueue(self.db)
        targets: List[DispatchTarget] = []

        for recipient in recipients:
            decision = await filter_engine.apply_filters(recipient.id, issue, enabled_channels)

            if decision.action == FilterAction.IGNORE:
                outcome["ignored"] += 1
                logger.debug(f"User {recipient.id} ignores issue {issue.id}: {decision.reason}")
                continue

            digest_pref = digest_prefs.get(recipient.id)
            if decision.action == FilterAction.DIGEST_ONLY or (digest_pref is not None and digest_pref.enabled):
                await digest_queue.enqueue(
                    user_id=recipient.id,
                    bug_id=issue.id,
                    event_type=event_type.value,
                    subject=subject,
                    body=text_body,
                    pref=digest_pref,
                )
                outcome["queued"] += 1
                continue

            channels = [c for c in decision.channels if c in enabled_channels]
            target = DispatchTarget(
                user_id=recipient.id,
                email=recipient.email if NotificationChannel.EMAIL.value in channels else None,
                pushover=NotificationChannel.PUSHOVER.value in channels,
                rocketchat=NotificationChannel.ROCKETCHAT.value in channels,
                teams=NotificationChannel.TEAMS.value in channels,
                webpush=(
                    subscriptions.get(recipient.id, [])
                    if NotificationChannel.WEBPUSH.value in channels else []
                ),
            )
            if target.is_empty:
                logger.debug(f"User {recipient.id} has no enabled channel it can receive on")
                continue
            targets.append(target)

        outcome["immediate"] = len(targets)
        if targets:
            report = await self.dispatcher.dispatch(
                targets, subject, text_body, html_body, bug_id=issue.id, url=issue_url
            )

            await subscription_store.disable(report.expired_subscriptions)
            await subscription_store.touch(report.delivered_subscriptions)

            sent_at = datetime.utcnow()

            for target in targets:
                channels_sent = report.channels_for(target.user_id)
                if channels_sent:
                    await log_history(
                        self.db,
                        user_id=target.user_id,
                        bug_id=issue.id,
                        event_type=event_type.value,
                        subject=subject,
                        body=text_body,
                        channels_sent=channels_sent,
                        date_sent=sent_at,
                    )

        logger.info(
            f"Issue {issue.id} {IssueAction(ctx.action).value} ({event_type.value}): "
            f"{outcome['recipients']} recipients, {outcome['immediate']} immediate, "
            f"{outcome['queued']} queued, {outcome['ignored']} ignored"
        )
        return outcome
