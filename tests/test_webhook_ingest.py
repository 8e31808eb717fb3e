"""Tests for webhook verification, ref filtering and dedupe."""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.deployment import Deployment, DeploymentStatus, DeploymentTrigger
from app.models.git_repository import GitProvider
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.services.build_events import BuildEventBus
from app.services.deploy_service import DeployService
from app.services.pipeline_errors import VerificationError
from app.services.webhook_ingest_service import WebhookIngestService, redact_headers
from tests.conftest import FakeGitSync, FakeRuntime, RecordingQueue, make_repo


def _push(ref: str = "refs/heads/main", sha: str = "abc123", message: str = "fix") -> bytes:
    return json.dumps({"ref": ref, "after": sha, "message": message, "author": "Ada"}).encode()


def _github_push(sha: str = "a" * 40) -> bytes:
    return json.dumps(
        {"ref": "refs/heads/main", "after": sha, "head_commit": {"id": sha, "message": "m", "author": {"name": "Ada"}}}
    ).encode()


def _event_count(db, repo) -> int:
    return db.scalar(select(func.count()).select_from(WebhookEvent).where(WebhookEvent.repo_id == repo.repo_id))


def _uuid(value: str) -> uuid.UUID:
    return uuid.UUID(value)


def _service(db, queue=None) -> WebhookIngestService:
    return WebhookIngestService(db, queue=queue, events=BuildEventBus())


class TestAcceptedEvents:
    def test_push_on_tracked_branch_creates_request(self, db_session):
        repo = make_repo(db_session)
        queue = RecordingQueue()

        result = _service(db_session, queue).receive(repo.repo_id, "generic", _push(), {})
        db_session.commit()

        assert result["message"] == "Build queued"
        assert result["build_id"] in queue.enqueued
        request = db_session.scalar(select(BuildRequest).where(BuildRequest.build_id == result["build_id"]))
        assert request.commit_sha == "abc123"
        assert request.commit_message == "fix"
        assert request.commit_author == "Ada"
        assert request.branch == "main"
        assert request.trigger == DeploymentTrigger.webhook
        assert request.status == BuildRequestStatus.queued
        event = db_session.get(WebhookEvent, request.webhook_event_id)
        assert str(event.event_id) == result["event_id"]
        assert event.status == WebhookEventStatus.queued
        assert event.build_id == request.build_id
        assert event.processed is False

    def test_without_queue_request_waits_for_worker(self, db_session):
        repo = make_repo(db_session)

        result = _service(db_session).receive(repo.repo_id, "generic", _push(), {})

        request = db_session.scalar(select(BuildRequest).where(BuildRequest.build_id == result["build_id"]))
        assert request.status == BuildRequestStatus.requested

    def test_verified_github_push(self, db_session):
        repo = make_repo(db_session, provider=GitProvider.github, webhook_secret="s3cret")
        body = _github_push()
        signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        result = _service(db_session).receive(
            repo.repo_id, "github", body, {"X-Hub-Signature-256": signature, "X-GitHub-Event": "push"}
        )

        event = db_session.get(WebhookEvent, _uuid(result["event_id"]))
        assert event.verified is True
        assert event.signature == signature
        assert result["build_id"] is not None

    def test_event_is_closed_when_build_finishes(self, db_session, data_dir):
        repo = make_repo(db_session)
        result = _service(db_session).receive(repo.repo_id, "generic", _push(), {})
        db_session.commit()
        request = db_session.scalar(select(BuildRequest).where(BuildRequest.build_id == result["build_id"]))

        deployment = DeployService(
            db_session, git=FakeGitSync(data_dir), runtime=FakeRuntime(), events=BuildEventBus()
        ).run_build(request)

        event = db_session.get(WebhookEvent, request.webhook_event_id)
        assert event.processed is True
        assert event.status == WebhookEventStatus.processed
        assert event.deployment_id == deployment.deployment_id


class TestFiltering:
    def test_other_branch_is_ignored(self, db_session):
        repo = make_repo(db_session)

        result = _service(db_session).receive(repo.repo_id, "generic", _push(ref="refs/heads/develop"), {})

        assert result["build_id"] is None
        assert "does not match" in result["message"]
        event = db_session.get(WebhookEvent, _uuid(result["event_id"]))
        assert event.status == WebhookEventStatus.ignored
        assert event.processed is True
        count = db_session.scalar(
            select(func.count()).select_from(BuildRequest).where(BuildRequest.repo_id == repo.repo_id)
        )
        assert count == 0

    @pytest.mark.parametrize(
        ("ref", "builds"),
        [
            ("refs/heads/release/1.4", True),
            ("refs/tags/v2.0.0", True),
            ("refs/heads/feature/x", False),
            ("refs/heads/main", True),
        ],
    )
    def test_auto_deploy_patterns(self, db_session, ref, builds):
        repo = make_repo(db_session, auto_deploy=True, auto_deploy_branches=["release/*", "v*"])

        result = _service(db_session).receive(repo.repo_id, "generic", _push(ref=ref), {})

        assert (result["build_id"] is not None) is builds

    def test_patterns_ignored_without_auto_deploy(self, db_session):
        repo = make_repo(db_session, auto_deploy=False, auto_deploy_branches=["release/*"])
        result = _service(db_session).receive(repo.repo_id, "generic", _push(ref="refs/heads/release/1"), {})
        assert result["build_id"] is None

    def test_tag_request_has_no_branch(self, db_session):
        repo = make_repo(db_session, auto_deploy=True, auto_deploy_branches=["v*"])
        result = _service(db_session).receive(repo.repo_id, "generic", _push(ref="refs/tags/v3"), {})
        request = db_session.scalar(select(BuildRequest).where(BuildRequest.build_id == result["build_id"]))
        assert request.tag == "v3"
        assert request.branch is None

    def test_ping_is_recorded_but_ignored(self, db_session):
        repo = make_repo(db_session, provider=GitProvider.github)
        result = _service(db_session).receive(repo.repo_id, "github", b'{"zen": "x"}', {"X-GitHub-Event": "ping"})
        assert result["build_id"] is None
        assert _event_count(db_session, repo) == 1


class TestDedupe:
    def test_duplicate_delivery_does_not_queue_twice(self, db_session):
        repo = make_repo(db_session)
        svc = _service(db_session)

        first = svc.receive(repo.repo_id, "generic", _push(sha="dup111"), {})
        second = svc.receive(repo.repo_id, "generic", _push(sha="dup111"), {})

        assert first["build_id"] is not None
        assert second["build_id"] is None
        assert first["build_id"] in second["message"]
        assert _event_count(db_session, repo) == 2

    def test_already_deployed_commit(self, db_session):
        repo = make_repo(db_session)
        db_session.add(
            Deployment(
                stack_id=repo.stack_id,
                repo_id=repo.repo_id,
                build_id="previous",
                commit_sha="live999",
                status=DeploymentStatus.successful,
                trigger=DeploymentTrigger.manual,
                completed_at=datetime.now(UTC),
            )
        )
        db_session.commit()

        result = _service(db_session).receive(repo.repo_id, "generic", _push(sha="live999"), {})

        assert result["build_id"] is None
        assert "already deployed" in result["message"]

    def test_finished_build_does_not_block_new_delivery(self, db_session):
        repo = make_repo(db_session)
        svc = _service(db_session)
        first = svc.receive(repo.repo_id, "generic", _push(sha="again1"), {})
        request = db_session.scalar(select(BuildRequest).where(BuildRequest.build_id == first["build_id"]))
        request.status = BuildRequestStatus.failed
        db_session.flush()

        second = svc.receive(repo.repo_id, "generic", _push(sha="again1"), {})
        assert second["build_id"] is not None


class TestRejected:
    def test_bad_signature_persists_nothing(self, db_session):
        repo = make_repo(db_session, provider=GitProvider.github, webhook_secret="s3cret")
        headers = {"X-Hub-Signature-256": "sha256=" + "0" * 64, "X-GitHub-Event": "push"}

        with pytest.raises(VerificationError):
            _service(db_session).receive(repo.repo_id, "github", _github_push(), headers)
        assert _event_count(db_session, repo) == 0

    def test_bitbucket_without_secret_needs_delivery_headers(self, db_session):
        repo = make_repo(db_session, provider=GitProvider.bitbucket)
        body = json.dumps(
            {"push": {"changes": [{"new": {"type": "branch", "name": "main", "target": {"hash": "f" * 40}}}]}}
        ).encode()

        with pytest.raises(VerificationError):
            _service(db_session).receive(repo.repo_id, "bitbucket", body, {"X-Event-Key": "repo:push"})

        result = _service(db_session).receive(
            repo.repo_id,
            "bitbucket",
            body,
            {"X-Event-Key": "repo:push", "X-Request-UUID": "r", "X-Hook-UUID": "h"},
        )
        assert result["build_id"] is not None

    def test_provider_mismatch(self, db_session):
        repo = make_repo(db_session, provider=GitProvider.gitlab)
        with pytest.raises(ValueError):
            _service(db_session).receive(repo.repo_id, "github", _github_push(), {})

    def test_unknown_repository(self, db_session):
        with pytest.raises(LookupError):
            _service(db_session).receive(uuid.uuid4(), "generic", _push(), {})

    def test_malformed_payload(self, db_session):
        repo = make_repo(db_session)
        with pytest.raises(ValueError):
            _service(db_session).receive(repo.repo_id, "generic", b"{oops", {})
        assert _event_count(db_session, repo) == 0


class TestHousekeeping:
    def test_secret_headers_are_redacted(self, db_session):
        repo = make_repo(db_session, webhook_secret="tok")
        result = _service(db_session).receive(
            repo.repo_id, "generic", _push(), {"X-Webhook-Token": "tok", "User-Agent": "curl"}
        )
        event = db_session.get(WebhookEvent, _uuid(result["event_id"]))
        assert event.headers == {"x-webhook-token": "***", "user-agent": "curl"}
        assert event.verified is True

    def test_redact_headers(self):
        assert redact_headers({"Authorization": "Bearer x", "X-Gitlab-Token": "t", "Accept": "*/*"}) == {
            "authorization": "***",
            "x-gitlab-token": "***",
            "accept": "*/*",
        }

    def test_prune_only_processed_events(self, db_session):
        repo = make_repo(db_session)
        svc = _service(db_session)
        ignored = svc.receive(repo.repo_id, "generic", _push(ref="refs/heads/other"), {})
        queued = svc.receive(repo.repo_id, "generic", _push(sha="keep01"), {})
        old = datetime.now(UTC) - timedelta(days=60)
        for result in (ignored, queued):
            db_session.get(WebhookEvent, _uuid(result["event_id"])).received_at = old
        db_session.flush()

        assert svc.prune(datetime.now(UTC) - timedelta(days=30)) >= 1
        db_session.expire_all()
        assert db_session.get(WebhookEvent, _uuid(ignored["event_id"])) is None
        assert db_session.get(WebhookEvent, _uuid(queued["event_id"])) is not None
        assert len(svc.list_events(repo.repo_id)) == 1
