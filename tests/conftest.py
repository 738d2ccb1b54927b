"""Shared test fixtures and configuration for notification core tests."""
from datetime import datetime
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio

from bugnotify.config import Settings
from bugnotify.database import Database
from bugnotify.models import (
    Issue,
    NotificationPreference,
    ProjectMembership,
    User,
)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path}/test.db"


@pytest_asyncio.fixture
async def database(database_url):
    """A fresh file-backed SQLite database with every table created."""
    database = Database(database_url)
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db(database):
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        APP_ENV="test",
        EMAIL_ENABLED=True,
        APP_BASE_URL="https://tracker.example.com",
        CRON_SECRET="s3cret",
        CHANNEL_TIMEOUT_SECONDS=5.0,
    )


# =============================================================================
# SEED HELPERS
# =============================================================================

@pytest.fixture
def make_user(db):
    """Create a user who is a member of the given projects."""
    async def _make_user(
        user_id: int,
        username: str,
        email: Optional[str] = None,
        enabled: bool = True,
        projects: Sequence[int] = (1,),
        realname: str = "",
    ) -> User:
        user = User(
            id=user_id,
            username=username,
            realname=realname or username.title(),
            email=f"{username}@example.com" if email is None else email,
            enabled=enabled,
        )
        db.add(user)
        for project_id in projects:
            db.add(ProjectMembership(project_id=project_id, user_id=user_id))
        await db.flush()
        return user

    return _make_user


@pytest.fixture
def make_issue(db):
    async def _make_issue(
        issue_id: int = 100,
        project_id: int = 1,
        reporter_id: int = 1,
        handler_id: Optional[int] = None,
        severity: int = 50,
        priority: int = 30,
        category_id: int = 0,
        tags: Optional[List[str]] = None,
        summary: str = "Crash on save",
    ) -> Issue:
        issue = Issue(
            id=issue_id,
            project_id=project_id,
            reporter_id=reporter_id,
            handler_id=handler_id,
            severity=severity,
            priority=priority,
            category_id=category_id,
            tags=tags or [],
            summary=summary,
            created_at=datetime(2024, 5, 1, 12, 0, 0),
        )
        db.add(issue)
        await db.flush()
        return issue

    return _make_issue


@pytest.fixture
def make_preference(db):
    """Preference row with every event type enabled at the given threshold."""
    async def _make_preference(user_id: int, min_severity: int = 10, **overrides) -> NotificationPreference:
        values = {}
        for event in (
            "new", "assigned", "feedback", "resolved", "closed",
            "reopened", "bugnote", "status", "priority",
        ):
            values[f"email_on_{event}"] = True
            values[f"email_on_{event}_min_severity"] = min_severity
        values.update(overrides)

        pref = NotificationPreference(user_id=user_id, **values)
        db.add(pref)
        await db.flush()
        return pref

    return _make_preference
