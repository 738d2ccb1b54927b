"""
Recipient Resolver

Works out who hears about an issue event: project members with a usable
email identity, each annotated with the Preference Checker's verdict.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError
from bugnotify.models import Issue, NotificationEventType, ProjectMembership, User

from .preferences import decide, load_preferences

logger = logging.getLogger(__name__)


@dataclass
class IssueSnapshot:
    """Issue attributes the notification core decides on."""
    id: int
    project_id: int
    reporter_id: int
    handler_id: Optional[int]
    severity: int
    priority: int = 30
    category_id: int = 0
    summary: str = ""
    status: int = 10
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_issue(cls, issue: Issue) -> "IssueSnapshot":
        return cls(
            id=issue.id,
            project_id=issue.project_id,
            reporter_id=issue.reporter_id,
            handler_id=issue.handler_id,
            severity=issue.severity,
            priority=issue.priority,
            category_id=issue.category_id,
            summary=issue.summary or "",
            status=issue.status,
            tags=list(issue.tags or []),
        )


@dataclass
class NotificationRecipient:
    id: int
    username: str
    realname: str
    email: str
    will_receive: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "realname": self.realname,
            "email": self.email,
            "willReceive": self.will_receive,
            "reason": self.reason,
        }


def recipient_sort_key(recipient: NotificationRecipient):
    """Receivers first, then ascending username."""
    return (not recipient.will_receive, recipient.username.casefold(), recipient.username)


class RecipientResolver:
    """
    Resolves the ordered recipient list for an issue event.

    Lookup failures propagate as DataAccessError; they are never treated as
    an empty audience.
    """

    def __init__(self, db: AsyncSession, email_enabled: bool):
        self.db = db
        self.email_enabled = email_enabled

    async def load_issue(self, issue_id: int) -> Optional[IssueSnapshot]:
        try:
            result = await self.db.execute(select(Issue).where(Issue.id == issue_id))
            issue = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to load issue {issue_id}: {e}") from e
        return IssueSnapshot.from_issue(issue) if issue else None

    async def _load_candidates(self, project_id: int) -> List[User]:
        try:
            result = await self.db.execute(
                select(User)
                .join(ProjectMembership, ProjectMembership.user_id == User.id)
                .where(ProjectMembership.project_id == project_id)
            )
            users = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DataAccessError(
                f"Failed to load members of project {project_id}: {e}"
            ) from e

        # Disabled or email-less members can't be reached at all
        return [u for u in users if u.enabled and (u.email or "").strip()]

    async def resolve(
        self,
        issue_id: int,
        event_type: NotificationEventType,
    ) -> List[NotificationRecipient]:
        """Resolve recipients for an issue id. Unknown issue -> []."""
        issue = await self.load_issue(issue_id)
        if issue is None:
            logger.info(f"Issue {issue_id} not found, no recipients")
            return []
        return await self.resolve_for_issue(issue, event_type)

    async def resolve_for_issue(
        self,
        issue: IssueSnapshot,
        event_type: NotificationEventType,
    ) -> List[NotificationRecipient]:
        event_type = NotificationEventType(event_type)
        candidates = await self._load_candidates(issue.project_id)
        preferences = await load_preferences(self.db, [u.id for u in candidates])

        recipients = []
        for user in candidates:
            if not self.email_enabled:
                will_receive = False
                reason = "Email notifications disabled globally"
            else:
                decision = decide(event_type, issue.severity, preferences.get(user.id))
                will_receive = decision.should_notify
                reason = decision.reason
                if will_receive:
                    if user.id == issue.reporter_id:
                        reason = f"Reporter ({reason})"
                    elif issue.handler_id is not None and user.id == issue.handler_id:
                        reason = f"Assignee ({reason})"
                    else:
                        reason = f"Project member ({reason})"

            recipients.append(NotificationRecipient(
                id=user.id,
                username=user.username,
                realname=user.realname or "",
                email=user.email,
                will_receive=will_receive,
                reason=reason,
            ))

        recipients.sort(key=recipient_sort_key)

        eligible = sum(1 for r in recipients if r.will_receive)
        logger.info(
            f"Resolved {len(recipients)} candidates for issue {issue.id} "
            f"({event_type.value}), {eligible} will receive"
        )
        return recipients
