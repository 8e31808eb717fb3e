"""Webhook Ingest Service — verify inbound Git provider events and turn matching pushes into builds."""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Mapping
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models.build_config import BuildConfig
from app.models.deployment import DeploymentTrigger
from app.models.git_repository import GitProvider, GitRepository
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.services import build_events as events_mod
from app.services.build_events import BuildEventBus, build_events
from app.services.git_providers import NormalizedEvent, get_provider
from app.services.pipeline_errors import VerificationError
from app.services.secret_vault import vault

logger = logging.getLogger(__name__)

# Header values that carry the shared secret itself
REDACTED_HEADERS = {"x-gitlab-token", "x-webhook-token", "x-webhook-secret", "authorization", "cookie"}
MAX_STORED_PAYLOAD = 1_000_000


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        str(k).lower(): ("***" if str(k).lower() in REDACTED_HEADERS else str(v)) for k, v in headers.items()
    }


def ref_matches(repo: GitRepository, config: BuildConfig | None, event: NormalizedEvent) -> bool:
    """Tracked branch always matches; auto-deploy patterns widen it to other branches and tags."""
    if not event.ref_name:
        return True
    if event.branch and event.branch == repo.branch:
        return True
    if config is not None and config.auto_deploy:
        return any(fnmatch.fnmatchcase(event.ref_name, pattern) for pattern in config.auto_deploy_branches or [])
    return False


class WebhookIngestService:
    def __init__(self, db: Session, queue=None, events: BuildEventBus | None = None) -> None:
        self.db = db
        self.queue = queue
        self.events = events or build_events

    def receive(
        self,
        repo_id: UUID,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
    ) -> dict[str, str | None]:
        """Handle one delivery.

        Raises LookupError for an unknown repository, ValueError for a provider
        mismatch or malformed payload and VerificationError when the signature
        or token does not check out. Filtered-out events are accepted.
        """
        repo = self.db.get(GitRepository, repo_id)
        if repo is None:
            raise LookupError("Repository not found")

        adapter = get_provider(provider)
        if adapter.kind != repo.provider:
            raise ValueError(f"Repository is configured for {repo.provider.value}, not {adapter.kind.value}")

        secret = vault.open(repo.webhook_secret_encrypted) if repo.webhook_secret_encrypted else None
        try:
            event = adapter.verify_and_parse(body, headers, secret)
        except VerificationError:
            logger.warning("Rejected %s webhook for repo %s: verification failed", provider, repo_id)
            raise
        if not event.verified and repo.provider == GitProvider.bitbucket:
            # Without a secret, Bitbucket deliveries are gated on their delivery headers only.
            raise VerificationError("Bitbucket delivery headers missing")

        record = WebhookEvent(
            repo_id=repo.repo_id,
            provider=adapter.kind,
            event_type=event.event_type[:80],
            payload=body[:MAX_STORED_PAYLOAD].decode("utf-8", errors="replace"),
            headers=redact_headers(headers),
            signature=event.signature,
            branch=event.branch,
            tag=event.tag,
            commit_sha=event.commit_sha,
            commit_message=event.commit_message,
            commit_author=event.author,
            verified=event.verified,
            status=WebhookEventStatus.received,
        )
        self.db.add(record)
        self.db.flush()
        self.events.publish(
            events_mod.WEBHOOK_RECEIVED,
            repo_id=repo.repo_id,
            event_id=str(record.event_id),
            event_type=event.event_type,
            ref=event.ref_name,
            commit_sha=event.commit_sha,
        )

        reason = self._skip_reason(repo, event)
        if reason:
            record.mark_processed(WebhookEventStatus.ignored, error=reason)
            self.db.flush()
            logger.info("Webhook %s for repo %s ignored: %s", record.event_id, repo_id, reason)
            return {"message": reason, "event_id": str(record.event_id), "build_id": None}

        from app.services.build_service import BuildService

        request = BuildService(self.db).create_request(
            repo,
            trigger=DeploymentTrigger.webhook,
            triggered_by=event.author,
            commit_sha=event.commit_sha,
            commit_message=event.commit_message,
            commit_author=event.author,
            branch=event.branch or (repo.branch if not event.tag else None),
            tag=event.tag,
            webhook_event_id=record.event_id,
        )
        record.status = WebhookEventStatus.queued
        record.build_id = request.build_id
        self.db.flush()
        if self.queue is not None:
            self.queue.enqueue(self.db, request)
        return {"message": "Build queued", "event_id": str(record.event_id), "build_id": request.build_id}

    def _skip_reason(self, repo: GitRepository, event: NormalizedEvent) -> str | None:
        if not event.triggers_build:
            return f"Event {event.event_type} does not trigger builds"
        if not ref_matches(repo, repo.build_config, event):
            return f"Ref {event.ref_name} does not match tracked branch {repo.branch}"

        from app.services.deploy_service import DeployService

        svc = DeployService(self.db)
        if event.commit_sha:
            latest = svc.latest_successful(repo.stack_id)
            if latest is not None and latest.commit_sha == event.commit_sha:
                return f"Commit {event.commit_sha[:12]} is already deployed"
            active = svc.find_active_request(repo.repo_id, event.commit_sha)
            if active is not None:
                return f"Commit {event.commit_sha[:12]} already has build {active.build_id}"
        return None

    def list_events(self, repo_id: UUID, limit: int = 50, offset: int = 0) -> list[WebhookEvent]:
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.repo_id == repo_id)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt).all())

    def prune(self, older_than) -> int:
        result = self.db.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.received_at < older_than, WebhookEvent.processed.is_(True))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


def serialize_event(event: WebhookEvent) -> dict:
    return {
        "event_id": str(event.event_id),
        "repo_id": str(event.repo_id),
        "provider": event.provider.value,
        "event_type": event.event_type,
        "branch": event.branch,
        "tag": event.tag,
        "commit_sha": event.commit_sha,
        "verified": event.verified,
        "processed": event.processed,
        "status": event.status.value,
        "build_id": event.build_id,
        "deployment_id": str(event.deployment_id) if event.deployment_id else None,
        "error": event.error,
        "received_at": event.received_at.isoformat() if event.received_at else None,
        "processed_at": event.processed_at.isoformat() if event.processed_at else None,
    }
