"""Tests for the HTTP surface."""

import asyncio
import pytest
from fastapi.testclient import TestClient

from bugnotify.container import AppContainer
from bugnotify.database import Database
from bugnotify.main import create_app


async def _prepare(database: Database) -> None:
    await database.create_all()
    # Drop connections opened on this loop; the app opens its own
    await database.dispose()


@pytest.fixture
def client(database_url, test_settings):
    database = Database(database_url)
    asyncio.run(_prepare(database))
    container = AppContainer(test_settings, database=database, transports={})

    with TestClient(create_app(test_settings, container=container)) as client:
        yield client


SECRET = {"X-Cron-Secret": "s3cret"}

EVENT = {
    "issue_id": 404,
    "issue_summary": "Crash on save",
    "project_id": 1,
    "action": "created",
    "actor_id": 1,
    "actor_name": "Alice",
}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestCronSecret:

    @pytest.mark.parametrize("headers", [{}, {"X-Cron-Secret": "wrong"}])
    def test_rejects_missing_or_wrong_secret(self, client, headers):
        assert client.post("/api/cron/process-digests", headers=headers).status_code == 401
        assert client.post("/api/notifications/events", json=EVENT, headers=headers).status_code == 401

    def test_empty_configured_secret_refuses_everything(self, database_url, test_settings):
        test_settings.CRON_SECRET = ""
        database = Database(database_url)
        asyncio.run(_prepare(database))
        container = AppContainer(test_settings, database=database, transports={})

        with TestClient(create_app(test_settings, container=container)) as client:
            response = client.post("/api/cron/process-digests", headers={"X-Cron-Secret": ""})

        assert response.status_code == 401


class TestEndpoints:

    def test_process_digests(self, client):
        response = client.post("/api/cron/process-digests", headers=SECRET)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["digests_sent"] == 0
        assert body["cleaned_up"] == 0
        assert body["history_cleaned_up"] == 0

    def test_issue_event_is_accepted(self, client):
        response = client.post("/api/notifications/events", json=EVENT, headers=SECRET)

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "issue_id": 404, "action": "created"}

    def test_issue_event_validates_action(self, client):
        response = client.post(
            "/api/notifications/events", json={**EVENT, "action": "exploded"}, headers=SECRET
        )
        assert response.status_code == 422

    def test_recipient_preview_for_unknown_issue(self, client):
        response = client.get("/api/notifications/issues/404/recipients", params={"event_type": "resolved"})

        assert response.status_code == 200
        assert response.json() == {"issue_id": 404, "event_type": "resolved", "recipients": []}

    def test_recipient_preview_rejects_unknown_event_type(self, client):
        response = client.get("/api/notifications/issues/1/recipients", params={"event_type": "party"})
        assert response.status_code == 422

    def test_issue_audit(self, client):
        response = client.get("/api/notifications/issues/404/audit")

        assert response.status_code == 200
        assert response.json() == {"issue_id": 404, "deliveries": []}

    def test_issue_timeline(self, client):
        response = client.get("/api/notifications/issues/404/timeline")

        assert response.status_code == 200
        assert response.json() == {
            "issue_id": 404,
            "notification_count": 0,
            "unique_recipients": 0,
            "timeline": [],
        }

    def test_filter_suggestions(self, client):
        response = client.get("/api/notifications/users/1/filters/suggestions/severity")

        assert response.status_code == 200
        assert response.json() == {"filter_type": "severity", "count": 0, "suggestions": []}

    def test_filter_suggestions_rejects_unknown_type(self, client):
        response = client.get("/api/notifications/users/1/filters/suggestions/colour")
        assert response.status_code == 400
