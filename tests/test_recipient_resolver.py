"""Tests for the Recipient Resolver."""

import pytest
from unittest.mock import AsyncMock

from sqlalchemy.exc import OperationalError

from bugnotify.errors import DataAccessError
from bugnotify.models import NotificationEventType
from bugnotify.notifications.recipients import (
    IssueSnapshot,
    NotificationRecipient,
    RecipientResolver,
    recipient_sort_key,
)


# =============================================================================
# End-to-end scenarios
# =============================================================================

class TestResolveScenarios:

    @pytest.mark.asyncio
    async def test_reporter_with_matching_preference_will_receive(
        self, db, make_user, make_issue, make_preference
    ):
        """Scenario A: severity 50, reporter opted in at threshold 10."""
        await make_user(1, "reporter")
        await make_preference(1, min_severity=10)
        await make_issue(issue_id=100, reporter_id=1, severity=50)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

        assert len(recipients) == 1
        assert recipients[0].id == 1
        assert recipients[0].will_receive is True
        assert recipients[0].reason.startswith("Reporter (")
        assert recipients[0].reason == "Reporter (new notifications enabled, severity 50 >= 10)"

    @pytest.mark.asyncio
    async def test_disabled_handler_is_excluded(self, db, make_user, make_issue, make_preference):
        """Scenario B: the handler's account is disabled but still a member."""
        await make_user(1, "reporter")
        await make_user(2, "handler", enabled=False)
        await make_preference(1)
        await make_preference(2)
        await make_issue(reporter_id=1, handler_id=2)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.ASSIGNED)

        assert [r.id for r in recipients] == [1]

    @pytest.mark.asyncio
    async def test_member_without_email_is_excluded(self, db, make_user, make_issue, make_preference):
        await make_user(1, "reporter")
        await make_user(2, "noemail", email="")
        await make_user(3, "blank", email="   ")
        await make_preference(2)
        await make_preference(3)
        await make_issue(reporter_id=1)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

        assert [r.username for r in recipients] == ["reporter"]

    @pytest.mark.asyncio
    async def test_only_members_of_the_issue_project(self, db, make_user, make_issue, make_preference):
        await make_user(1, "reporter", projects=[1])
        await make_user(2, "outsider", projects=[2])
        await make_preference(2)
        await make_issue(project_id=1, reporter_id=1)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

        assert [r.id for r in recipients] == [1]

    @pytest.mark.asyncio
    async def test_missing_issue_returns_empty(self, db):
        assert await RecipientResolver(db, email_enabled=True).resolve(404, NotificationEventType.NEW) == []


# =============================================================================
# Verdicts, roles and ordering
# =============================================================================

class TestResolveVerdicts:

    @pytest.mark.asyncio
    async def test_roles_annotate_eligible_recipients(self, db, make_user, make_issue, make_preference):
        await make_user(1, "rita")
        await make_user(2, "hank")
        await make_user(3, "mona")
        for user_id in (1, 2, 3):
            await make_preference(user_id)
        await make_issue(reporter_id=1, handler_id=2)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)
        reasons = {r.username: r.reason for r in recipients}

        assert reasons["rita"].startswith("Reporter (")
        assert reasons["hank"].startswith("Assignee (")
        assert reasons["mona"].startswith("Project member (")

    @pytest.mark.asyncio
    async def test_role_never_flips_an_ineligible_verdict(self, db, make_user, make_issue, make_preference):
        await make_user(1, "reporter")
        await make_preference(1, min_severity=70)
        await make_issue(reporter_id=1, severity=50)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

        assert recipients[0].will_receive is False
        assert recipients[0].reason == "Severity 50 below threshold 70"

    @pytest.mark.asyncio
    async def test_receivers_sorted_first_then_by_username(self, db, make_user, make_issue, make_preference):
        await make_user(1, "carol")
        await make_user(2, "alice")   # no preferences -> won't receive
        await make_user(3, "bob")
        await make_user(4, "aaron")   # no preferences -> won't receive
        await make_preference(1)
        await make_preference(3)
        await make_issue(reporter_id=1)

        recipients = await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

        assert [r.username for r in recipients] == ["bob", "carol", "aaron", "alice"]
        assert [r.will_receive for r in recipients] == [True, True, False, False]
        assert recipients[2].reason == "No notification preferences configured"

    @pytest.mark.asyncio
    async def test_global_email_kill_switch(self, db, make_user, make_issue, make_preference):
        await make_user(1, "reporter")
        await make_preference(1)
        await make_issue(reporter_id=1)

        recipients = await RecipientResolver(db, email_enabled=False).resolve(100, NotificationEventType.NEW)

        assert recipients[0].will_receive is False
        assert recipients[0].reason == "Email notifications disabled globally"

    def test_to_dict_uses_will_receive_key(self):
        recipient = NotificationRecipient(1, "alice", "Alice", "alice@example.com", True, "ok")
        assert recipient.to_dict()["willReceive"] is True

    def test_sort_key_orders_receivers_first(self):
        recipients = [
            NotificationRecipient(1, "zed", "", "z@example.com", True, ""),
            NotificationRecipient(2, "amy", "", "a@example.com", False, ""),
            NotificationRecipient(3, "bea", "", "b@example.com", True, ""),
        ]
        assert [r.username for r in sorted(recipients, key=recipient_sort_key)] == ["bea", "zed", "amy"]


# =============================================================================
# Failure semantics
# =============================================================================

class TestResolveFailures:

    @pytest.mark.asyncio
    async def test_issue_lookup_failure_propagates(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))

        with pytest.raises(DataAccessError):
            await RecipientResolver(db, email_enabled=True).resolve(100, NotificationEventType.NEW)

    @pytest.mark.asyncio
    async def test_membership_lookup_failure_propagates(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        issue = IssueSnapshot(id=100, project_id=1, reporter_id=1, handler_id=None, severity=50)

        with pytest.raises(DataAccessError):
            await RecipientResolver(db, email_enabled=True).resolve_for_issue(issue, NotificationEventType.NEW)
