"""Tests for the maintenance Celery tasks."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.deployment import DeploymentTrigger
from app.models.webhook_event import WebhookEvent
from app.services.build_events import BuildEventBus
from app.services.webhook_ingest_service import WebhookIngestService
from app.tasks.maintenance import mark_stuck_builds, prune_webhook_events, trigger_scheduled_build
from tests.conftest import make_repo, unique_stack


def _bind_session(mock_sl, db_session) -> None:
    mock_sl.return_value.__enter__ = lambda s: db_session
    mock_sl.return_value.__exit__ = MagicMock(return_value=False)


class TestMarkStuckBuilds:
    def test_fails_old_running_builds(self, db_session) -> None:
        repo = make_repo(db_session)
        stuck = BuildRequest(
            repo_id=repo.repo_id,
            stack_id=repo.stack_id,
            status=BuildRequestStatus.running,
            started_at=datetime.now(UTC) - timedelta(hours=5),
        )
        fresh = BuildRequest(
            repo_id=repo.repo_id,
            stack_id=repo.stack_id,
            status=BuildRequestStatus.running,
            started_at=datetime.now(UTC),
        )
        db_session.add_all([stuck, fresh])
        db_session.commit()

        with patch("app.tasks.maintenance.SessionLocal") as mock_sl:
            _bind_session(mock_sl, db_session)
            result = mark_stuck_builds()

        assert result["failed_builds"] >= 1
        db_session.refresh(stuck)
        db_session.refresh(fresh)
        assert stuck.status == BuildRequestStatus.failed
        assert "without finishing" in stuck.error
        assert fresh.status == BuildRequestStatus.running


class TestPruneWebhookEvents:
    def test_deletes_expired_processed_events(self, db_session) -> None:
        repo = make_repo(db_session)
        body = json.dumps({"ref": "refs/heads/elsewhere", "after": "abc"}).encode()
        result = WebhookIngestService(db_session, events=BuildEventBus()).receive(repo.repo_id, "generic", body, {})
        event = db_session.get(WebhookEvent, uuid.UUID(result["event_id"]))
        event.received_at = datetime.now(UTC) - timedelta(days=90)
        db_session.commit()
        event_id = event.event_id

        with patch("app.tasks.maintenance.SessionLocal") as mock_sl:
            _bind_session(mock_sl, db_session)
            outcome = prune_webhook_events()

        assert outcome["deleted_events"] >= 1
        db_session.expire_all()
        assert db_session.get(WebhookEvent, event_id) is None


class TestTriggerScheduledBuild:
    def test_requests_build_for_worker(self, db_session) -> None:
        repo = make_repo(db_session)

        with patch("app.tasks.maintenance.SessionLocal") as mock_sl:
            _bind_session(mock_sl, db_session)
            result = trigger_scheduled_build(repo.stack_id)

        assert result["success"] is True
        request = db_session.query(BuildRequest).filter(BuildRequest.build_id == result["build_id"]).one()
        assert request.status == BuildRequestStatus.requested
        assert request.trigger == DeploymentTrigger.scheduled
        assert request.triggered_by == "scheduler"
        assert request.branch == "main"

    def test_unknown_stack_is_reported(self, db_session) -> None:
        with patch("app.tasks.maintenance.SessionLocal") as mock_sl:
            _bind_session(mock_sl, db_session)
            result = trigger_scheduled_build(unique_stack())

        assert result["success"] is False
        assert "No repository" in result["error"]
