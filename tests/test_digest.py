"""
Tests for the Digest Queue and Processor.

The dispatcher is a mock returning canned reports, so these tests cover
scheduling, thresholds, claiming, status transitions and retention.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select

from bugnotify.errors import PreferenceValidationError
from bugnotify.models import DigestPreference, QueuedNotification, QueueStatus
from bugnotify.notifications.digest import (
    DigestProcessor,
    DigestQueue,
    next_digest_time,
    update_digest_preferences,
)
from bugnotify.notifications.dispatch import DeliveryOutcome, DispatchReport

# Wednesday
NOW = datetime(2024, 5, 15, 10, 0, 0)


def delivered(user_id=1) -> DispatchReport:
    return DispatchReport(outcomes=[DeliveryOutcome(user_id, "email", "a@example.com", True)])


def undelivered(user_id=1) -> DispatchReport:
    return DispatchReport(outcomes=[DeliveryOutcome(user_id, "email", "a@example.com", False, "503")])


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=delivered())
    return dispatcher


async def statuses(db, user_id=1):
    result = await db.execute(
        select(QueuedNotification.status)
        .where(QueuedNotification.user_id == user_id)
        .order_by(QueuedNotification.id)
    )
    return [row[0] for row in result.all()]


async def enqueue_many(db, count, user_id=1, now=NOW - timedelta(days=1)):
    queue = DigestQueue(db)
    return [
        await queue.enqueue(user_id, 100 + i, "new", f"Issue #{100 + i}: Crash", "body", now=now)
        for i in range(count)
    ]


# =============================================================================
# Unit Tests - next_digest_time
# =============================================================================

class TestNextDigestTime:

    @pytest.mark.parametrize(
        "frequency,time_of_day,day_of_week,now,expected",
        [
            ("hourly", 9, 1, datetime(2024, 5, 15, 10, 15), datetime(2024, 5, 15, 11, 0)),
            ("hourly", 9, 1, datetime(2024, 5, 15, 23, 0), datetime(2024, 5, 16, 0, 0)),
            ("daily", 9, 1, datetime(2024, 5, 15, 8, 0), datetime(2024, 5, 15, 9, 0)),
            ("daily", 9, 1, datetime(2024, 5, 15, 9, 0), datetime(2024, 5, 16, 9, 0)),
            ("daily", 0, 1, datetime(2024, 5, 15, 9, 0), datetime(2024, 5, 16, 0, 0)),
            ("weekly", 9, 1, datetime(2024, 5, 15, 10, 0), datetime(2024, 5, 20, 9, 0)),
            ("weekly", 9, 1, datetime(2024, 5, 13, 8, 0), datetime(2024, 5, 13, 9, 0)),
            ("weekly", 9, 1, datetime(2024, 5, 13, 9, 30), datetime(2024, 5, 20, 9, 0)),
            ("weekly", 18, 7, datetime(2024, 5, 15, 10, 0), datetime(2024, 5, 19, 18, 0)),
        ],
    )
    def test_slots(self, frequency, time_of_day, day_of_week, now, expected):
        pref = DigestPreference(
            user_id=1, frequency=frequency, time_of_day=time_of_day, day_of_week=day_of_week
        )
        assert next_digest_time(pref, now) == expected

    def test_defaults_without_preference(self):
        assert next_digest_time(None, NOW) == datetime(2024, 5, 16, 9, 0)

    def test_always_strictly_future(self):
        for frequency in ("hourly", "daily", "weekly"):
            pref = DigestPreference(user_id=1, frequency=frequency, time_of_day=10, day_of_week=3)
            assert next_digest_time(pref, NOW) > NOW


# =============================================================================
# Preferences and queue
# =============================================================================

class TestDigestPreferences:

    @pytest.mark.asyncio
    async def test_upsert_creates_with_defaults(self, db, make_user):
        await make_user(1, "alice")
        pref = await update_digest_preferences(db, 1, enabled=True, frequency="weekly")

        assert pref.enabled is True
        assert pref.frequency == "weekly"
        assert pref.time_of_day == 9
        assert pref.min_notifications == 1
        assert pref.include_channels == ["email"]
        assert pref.next_digest_at is not None

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, db, make_user):
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True)
        pref = await update_digest_preferences(db, 1, enabled=False, include_channels=["webpush", "email"])

        assert pref.enabled is False
        assert pref.include_channels == ["webpush", "email"]
        assert pref.next_digest_at is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"frequency": "monthly"},
            {"time_of_day": 24},
            {"day_of_week": 0},
            {"min_notifications": 0},
            {"include_channels": ["fax"]},
            {"colour": "blue"},
        ],
    )
    async def test_invalid_values_rejected(self, db, changes):
        with pytest.raises(PreferenceValidationError):
            await update_digest_preferences(db, 1, **changes)


class TestDigestQueue:

    @pytest.mark.asyncio
    async def test_enqueue_schedules_next_slot(self, db, make_user):
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True, frequency="hourly")

        entry = await DigestQueue(db).enqueue(1, 100, "new", "Issue #100: Crash", "body", now=NOW)

        assert entry.status == "pending"
        assert entry.created_at == NOW
        assert entry.scheduled_at == datetime(2024, 5, 15, 11, 0)

    @pytest.mark.asyncio
    async def test_list_queued_oldest_first(self, db, make_user):
        await make_user(1, "alice")
        queue = DigestQueue(db)
        second = await queue.enqueue(1, 2, "new", "b", "b", now=NOW)
        first = await queue.enqueue(1, 1, "new", "a", "a", now=NOW - timedelta(hours=1))

        assert [e.id for e in await queue.list_queued(1)] == [first.id, second.id]
        assert await queue.list_queued(1, status=QueueStatus.SENT) == []


# =============================================================================
# Processor
# =============================================================================

class TestProcessPendingDigests:

    @pytest.mark.asyncio
    async def test_below_threshold_stays_pending(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True, min_notifications=3)
        await enqueue_many(db, 2)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["skipped_below_threshold"] == 1
        assert await statuses(db) == ["pending", "pending"]
        dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sends_one_digest_and_marks_sent(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        pref = await update_digest_preferences(db, 1, enabled=True, min_notifications=2)
        await enqueue_many(db, 3)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["digests_sent"] == 1
        assert summary["notifications_sent"] == 3
        assert await statuses(db) == ["sent", "sent", "sent"]

        dispatcher.dispatch.assert_awaited_once()
        targets, subject, text, html = dispatcher.dispatch.await_args.args
        assert [t.email for t in targets] == ["alice@example.com"]
        assert subject == "Notification Digest - 3 updates"
        assert text.splitlines()[2] == "- [new] Issue #100: Crash"

        sent_at = (await db.execute(select(QueuedNotification.sent_at))).scalars().all()
        assert sent_at == [NOW, NOW, NOW]
        assert pref.last_digest_sent_at == NOW
        assert pref.next_digest_at == datetime(2024, 5, 16, 9, 0)

    @pytest.mark.asyncio
    async def test_dispatch_failure_marks_failed(self, db, make_user, dispatcher):
        dispatcher.dispatch.return_value = undelivered()
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True)
        await enqueue_many(db, 2)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["digests_failed"] == 1
        assert await statuses(db) == ["failed", "failed"]

    @pytest.mark.asyncio
    async def test_no_deliverable_channel_marks_failed(self, db, make_user, dispatcher):
        await make_user(1, "alice", email="")
        await update_digest_preferences(db, 1, enabled=True)
        await enqueue_many(db, 1)

        await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        dispatcher.dispatch.assert_not_awaited()
        assert await statuses(db) == ["failed"]

    @pytest.mark.asyncio
    async def test_dispatches_once_per_included_channel(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True, include_channels=["email", "pushover"])
        await enqueue_many(db, 1)

        await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert dispatcher.dispatch.await_count == 2
        first, second = [c.args[0][0] for c in dispatcher.dispatch.await_args_list]
        assert first.email == "alice@example.com"
        assert second.pushover is True and second.email is None

    @pytest.mark.asyncio
    async def test_explicitly_disabled_user_keeps_rows_pending(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=False)
        await enqueue_many(db, 2)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["skipped_disabled"] == 1
        assert await statuses(db) == ["pending", "pending"]

    @pytest.mark.asyncio
    async def test_user_without_preference_uses_defaults(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        await enqueue_many(db, 1)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["digests_sent"] == 1
        assert await statuses(db) == ["sent"]

    @pytest.mark.asyncio
    async def test_not_yet_due_is_left_alone(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        await enqueue_many(db, 1, now=NOW)

        summary = await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert summary["users_due"] == 0
        assert await statuses(db) == ["pending"]

    @pytest.mark.asyncio
    async def test_partial_claim_is_released(self, db, make_user, dispatcher):
        """Rows already claimed by a concurrent run are never sent twice."""
        await make_user(1, "alice")
        await update_digest_preferences(db, 1, enabled=True, min_notifications=2)
        first, second = await enqueue_many(db, 2)
        second.status = QueueStatus.SENDING.value
        second.batch_id = "other-run"
        await db.commit()

        processor = DigestProcessor(db, dispatcher)
        processor._pending_ids = AsyncMock(return_value=[first.id, second.id])
        await processor.process_pending_digests(NOW)

        dispatcher.dispatch.assert_not_awaited()
        rows = (await db.execute(
            select(QueuedNotification.status, QueuedNotification.batch_id).order_by(QueuedNotification.id)
        )).all()
        assert [tuple(r) for r in rows] == [("pending", None), ("sending", "other-run")]


    @pytest.mark.asyncio
    async def test_dispatch_error_marks_claimed_batch_failed(self, db, make_user, dispatcher):
        dispatcher.dispatch.side_effect = RuntimeError("transport pool closed")
        await make_user(1, "alice")
        await enqueue_many(db, 2)

        with pytest.raises(RuntimeError):
            await DigestProcessor(db, dispatcher).process_pending_digests(NOW)

        assert await statuses(db) == ["failed", "failed"]

        dispatcher.dispatch.side_effect = None
        later = NOW + timedelta(days=365)
        summary = await DigestProcessor(db, dispatcher).process_pending_digests(later)
        assert summary["users_due"] == 0
        assert await DigestProcessor(db, dispatcher).cleanup_old_digests(30, now=later) == 2
        assert await statuses(db) == []


class TestCleanupOldDigests:

    @pytest.mark.asyncio
    async def test_deletes_old_rows_regardless_of_status(self, db, make_user, dispatcher):
        await make_user(1, "alice")
        old = NOW - timedelta(days=40)
        entries = await enqueue_many(db, 4, now=old)
        entries[0].status = QueueStatus.SENT.value
        entries[1].status = QueueStatus.FAILED.value
        entries[3].status = QueueStatus.SENDING.value
        await enqueue_many(db, 1, now=NOW - timedelta(days=29))
        await db.commit()

        processor = DigestProcessor(db, dispatcher)
        assert await processor.cleanup_old_digests(30, now=NOW) == 4
        assert await processor.cleanup_old_digests(30, now=NOW) == 0
        assert await statuses(db) == ["pending"]

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_swept(self, db, make_user, dispatcher):
        """A claim left behind by a dead run ages out with everything else."""
        await make_user(1, "alice")
        (entry,) = await enqueue_many(db, 1)
        entry.status = QueueStatus.SENDING.value
        entry.batch_id = "dead-run"
        await db.commit()

        later = NOW + timedelta(days=365)
        processor = DigestProcessor(db, dispatcher)

        assert (await processor.process_pending_digests(later))["users_due"] == 0
        assert await processor.cleanup_old_digests(30, now=later) == 1
        assert await statuses(db) == []
