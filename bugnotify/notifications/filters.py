"""
Filter Engine

Evaluates a user's custom notification filters against an issue and picks
one of notify / ignore / digest_only. Filters are an opt-in narrowing
mechanism: with no match the caller's default channels are notified.

When several filters match, a project-scoped filter beats a global one
(project_id == 0), and among equally specific filters the most recently
created wins.
"""

import logging
import operator
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bugnotify.errors import DataAccessError, PreferenceValidationError
from bugnotify.models import (
    FilterAction,
    FilterType,
    Issue,
    NotificationChannel,
    NotificationFilter,
    ProjectMembership,
)

from .recipients import IssueSnapshot

logger = logging.getLogger(__name__)

GLOBAL_PROJECT_ID = 0

_COMPARATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}

_NUMERIC_CLAUSE = re.compile(
    r"^\s*(severity|priority|category|project)\s*(==|!=|>=|<=|>|<)\s*(-?\d+)\s*$"
)
_TAG_CLAUSE = re.compile(r"^\s*tag\s*==?\s*(\S.*?)\s*$")

PRIORITY_LABELS = {10: "None", 20: "Low", 30: "Normal", 40: "High", 50: "Urgent", 60: "Immediate"}
SEVERITY_LABELS = {
    10: "Feature", 20: "Trivial", 30: "Text", 40: "Tweak",
    50: "Minor", 60: "Major", 70: "Crash", 80: "Block",
}


@dataclass
class FilterDecision:
    """Outcome of filter evaluation for one recipient."""
    action: FilterAction
    channels: List[str]
    matched: bool = False
    filter_id: Optional[int] = None
    reason: str = "No matching filters"


# =============================================================================
# MATCHING
# =============================================================================

def _matches_number(value: int, filter_value: str) -> bool:
    """Exact match ("50") or inclusive range ("30-60")."""
    filter_value = filter_value.strip()
    try:
        if "-" in filter_value:
            low, high = (int(part) for part in filter_value.split("-", 1))
            return low <= value <= high
        return value == int(filter_value)
    except ValueError:
        logger.warning(f"Ignoring malformed numeric filter value: {filter_value!r}")
        return False


def _issue_field(issue: IssueSnapshot, name: str) -> int:
    return {
        "severity": issue.severity,
        "priority": issue.priority,
        "category": issue.category_id,
        "project": issue.project_id,
    }[name]


def evaluate_custom_predicate(predicate: str, issue: IssueSnapshot) -> bool:
    """
    Evaluate a custom predicate such as ``severity>=60 && tag=security``.

    Clauses are joined by ``&&`` and must all hold. A malformed predicate
    never matches.
    """
    clauses = [c for c in predicate.split("&&") if c.strip()]
    if not clauses:
        return False

    issue_tags = {t.casefold() for t in issue.tags}
    for clause in clauses:
        numeric = _NUMERIC_CLAUSE.match(clause)
        if numeric:
            name, op, raw = numeric.groups()
            if not _COMPARATORS[op](_issue_field(issue, name), int(raw)):
                return False
            continue

        tag = _TAG_CLAUSE.match(clause)
        if tag:
            if tag.group(1).casefold() not in issue_tags:
                return False
            continue

        logger.warning(f"Malformed custom filter clause {clause.strip()!r} in {predicate!r}")
        return False

    return True


def matches_filter(filter_type: str, filter_value: str, issue: IssueSnapshot) -> bool:
    """Check whether a single filter applies to the issue."""
    filter_type = FilterType(filter_type)
    value = (filter_value or "").strip()

    if filter_type == FilterType.CATEGORY:
        return str(issue.category_id) == value
    if filter_type == FilterType.PRIORITY:
        return _matches_number(issue.priority, value)
    if filter_type == FilterType.SEVERITY:
        return _matches_number(issue.severity, value)
    if filter_type == FilterType.TAG:
        return bool(value) and any(t.casefold() == value.casefold() for t in issue.tags)
    if filter_type == FilterType.PROJECT:
        return str(issue.project_id) == value
    if filter_type == FilterType.CUSTOM:
        return evaluate_custom_predicate(value, issue)
    return False


def select_winning_filter(matched: Sequence[NotificationFilter]) -> Optional[NotificationFilter]:
    """Most specific first (project-scoped over global), then newest."""
    if not matched:
        return None
    return max(
        matched,
        key=lambda f: (f.project_id != GLOBAL_PROJECT_ID, f.created_at, f.id or 0),
    )


def normalize_channels(channels: Optional[Sequence[str]]) -> List[str]:
    normalized = []
    for channel in channels or []:
        try:
            value = NotificationChannel(channel).value
        except ValueError:
            raise PreferenceValidationError(f"Unknown channel: {channel}")
        if value not in normalized:
            normalized.append(value)
    return normalized


# =============================================================================
# ENGINE
# =============================================================================

class FilterEngine:
    """Filter evaluation and management for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _active_filters(self, user_id: int, project_id: int) -> List[NotificationFilter]:
        try:
            result = await self.db.execute(
                select(NotificationFilter)
                .where(NotificationFilter.user_id == user_id)
                .where(NotificationFilter.enabled.is_(True))
                .where(NotificationFilter.project_id.in_([GLOBAL_PROJECT_ID, project_id]))
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to load filters for user {user_id}: {e}") from e
        return list(result.scalars().all())

    async def apply_filters(
        self,
        user_id: int,
        issue: IssueSnapshot,
        default_channels: Sequence[str],
    ) -> FilterDecision:
        """Pick the action and channels for one recipient."""
        filters = await self._active_filters(user_id, issue.project_id)
        matched = [f for f in filters if matches_filter(f.filter_type, f.filter_value, issue)]
        winner = select_winning_filter(matched)

        if winner is None:
            return FilterDecision(action=FilterAction.NOTIFY, channels=list(default_channels))

        decision = FilterDecision(
            action=FilterAction(winner.action),
            channels=list(winner.channels or []) or list(default_channels),
            matched=True,
            filter_id=winner.id,
            reason=f"Matched {winner.filter_type} filter: {winner.filter_value}",
        )
        logger.debug(
            f"User {user_id} issue {issue.id}: {len(matched)} filters matched, "
            f"filter {winner.id} wins -> {decision.action.value}"
        )
        return decision

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    async def create_filter(
        self,
        user_id: int,
        filter_type: str,
        filter_value: str,
        action: str = FilterAction.NOTIFY.value,
        channels: Optional[Sequence[str]] = None,
        project_id: int = GLOBAL_PROJECT_ID,
        enabled: bool = True,
    ) -> NotificationFilter:
        notification_filter = NotificationFilter(
            user_id=user_id,
            project_id=project_id,
            enabled=enabled,
            filter_type=filter_type,
            filter_value=filter_value,
            action=action,
            channels=normalize_channels(channels),
        )
        try:
            self.db.add(notification_filter)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to create filter for user {user_id}: {e}") from e

        logger.info(f"Created notification filter {notification_filter.id} for user {user_id}")
        return notification_filter

    async def update_filter(self, filter_id: int, **changes: Any) -> Optional[NotificationFilter]:
        allowed = {"enabled", "filter_type", "filter_value", "action", "channels", "project_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise PreferenceValidationError(f"Unknown filter fields: {sorted(unknown)}")

        try:
            notification_filter = await self.db.get(NotificationFilter, filter_id)
            if notification_filter is None:
                return None
            for key, value in changes.items():
                if key == "channels":
                    value = normalize_channels(value)
                setattr(notification_filter, key, value)
            await self.db.flush()
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to update filter {filter_id}: {e}") from e

        logger.info(f"Updated notification filter {filter_id}")
        return notification_filter

    async def delete_filter(self, filter_id: int) -> bool:
        try:
            result = await self.db.execute(
                delete(NotificationFilter).where(NotificationFilter.id == filter_id)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to delete filter {filter_id}: {e}") from e

        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted notification filter {filter_id}")
        return deleted

    async def list_filters(
        self,
        user_id: int,
        project_id: Optional[int] = None,
    ) -> List[NotificationFilter]:
        """User's filters, newest first."""
        query = select(NotificationFilter).where(NotificationFilter.user_id == user_id)
        if project_id is not None:
            query = query.where(NotificationFilter.project_id == project_id)
        query = query.order_by(NotificationFilter.created_at.desc(), NotificationFilter.id.desc())

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to list filters for user {user_id}: {e}") from e
        return list(result.scalars().all())

    async def filter_stats(self, user_id: int) -> Dict[str, Any]:
        try:
            enabled_rows = await self.db.execute(
                select(NotificationFilter.enabled, func.count(NotificationFilter.id))
                .where(NotificationFilter.user_id == user_id)
                .group_by(NotificationFilter.enabled)
            )
            action_rows = await self.db.execute(
                select(NotificationFilter.action, func.count(NotificationFilter.id))
                .where(NotificationFilter.user_id == user_id)
                .group_by(NotificationFilter.action)
            )
            type_rows = await self.db.execute(
                select(NotificationFilter.filter_type, func.count(NotificationFilter.id))
                .where(NotificationFilter.user_id == user_id)
                .group_by(NotificationFilter.filter_type)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to compute filter stats for user {user_id}: {e}") from e

        by_enabled = {bool(enabled): count for enabled, count in enabled_rows.all()}
        active = by_enabled.get(True, 0)
        inactive = by_enabled.get(False, 0)
        return {
            "total": active + inactive,
            "active": active,
            "inactive": inactive,
            "by_action": {action: count for action, count in action_rows.all()},
            "by_type": {filter_type: count for filter_type, count in type_rows.all()},
        }

    async def suggested_filter_values(
        self,
        user_id: int,
        filter_type: str,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """
        Most common values of ``filter_type`` among issues in the user's
        projects, as ``{"value", "count", "label"}`` dicts, most frequent first.

        Custom predicates have no suggestions.
        """
        try:
            filter_type = FilterType(filter_type)
        except ValueError:
            raise PreferenceValidationError(f"Unknown filter type: {filter_type}")

        columns = {
            FilterType.CATEGORY: (Issue.category_id, lambda v: f"Category {v}"),
            FilterType.PRIORITY: (Issue.priority, lambda v: PRIORITY_LABELS.get(v, f"Priority {v}")),
            FilterType.SEVERITY: (Issue.severity, lambda v: SEVERITY_LABELS.get(v, f"Severity {v}")),
            FilterType.PROJECT: (Issue.project_id, lambda v: f"Project {v}"),
        }
        if filter_type != FilterType.TAG and filter_type not in columns:
            return []

        projects = select(ProjectMembership.project_id).where(ProjectMembership.user_id == user_id)
        try:
            if filter_type == FilterType.TAG:
                result = await self.db.execute(select(Issue.tags).where(Issue.project_id.in_(projects)))
                counts = Counter(tag for (tags,) in result.all() for tag in tags or [])
                ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
                return [{"value": tag, "count": count, "label": tag} for tag, count in ranked]

            column, label = columns[filter_type]
            count = func.count(Issue.id)
            result = await self.db.execute(
                select(column, count)
                .where(Issue.project_id.in_(projects))
                .group_by(column)
                .order_by(count.desc(), column)
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise DataAccessError(f"Failed to suggest {filter_type.value} values for user {user_id}: {e}") from e

        return [
            {"value": str(value), "count": int(n), "label": label(value)}
            for value, n in result.all()
        ]
