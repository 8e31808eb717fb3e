"""
Deploy Service — build/deploy pipeline for Git-driven stacks.

A build request is carried through an ordered list of phases sharing one
:class:`BuildContext`. The first phase to raise stops the run; the error is
written to the Deployment and, when configured, the last successful
deployment of the stack is redeployed.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.build_config import BuildConfig
from app.models.build_request import ACTIVE_BUILD_STATUSES, BuildRequest, BuildRequestStatus
from app.models.deployment import TERMINAL_DEPLOYMENT_STATUSES, Deployment, DeploymentStatus
from app.models.git_repository import GitRepository
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.services import build_events as events_mod
from app.services.build_events import BuildEventBus, build_events
from app.services.deploy_executor import BuildArtifact, DeployExecutor
from app.services.git_sync import Commit, GitSyncService
from app.services.pipeline_errors import BuildCancelled, PipelineError
from app.services.process_runner import Deadline
from app.services.secret_vault import vault
from app.services.stack_runtime import ComposeStackRuntime, StackRuntime

logger = logging.getLogger(__name__)

BUILD_PHASES = [
    "sync",
    "pre_build",
    "build",
    "post_build",
    "deploy",
    "health_check",
]

ROLLBACK_PHASES = [
    "deploy",
    "health_check",
]

PHASE_LABELS = {
    "sync": "Synchronize working copy",
    "pre_build": "Run pre-build commands",
    "build": "Build artifact",
    "post_build": "Run post-build commands",
    "deploy": "Apply stack",
    "health_check": "Verify stack health",
}

_DEPLOYMENT_LOG_PHASES = {"deploy", "health_check", "rollback"}
ROLLBACK_TIMEOUT_SECONDS = 900
STUCK_GRACE_SECONDS = 600
_LOG_FLUSH_SECONDS = 1.0


@dataclass
class BuildContext:
    request: BuildRequest
    repo: GitRepository
    config: BuildConfig
    deployment: Deployment
    deadline: Deadline
    cancel_check: Callable[[], bool]
    phase: str = "pending"
    commit: Commit | None = None
    artifact: BuildArtifact | None = None
    pending_lines: dict[str, list[str]] = field(default_factory=lambda: {"build": [], "deployment": []})
    last_flush: float = field(default_factory=time.monotonic)


class DeployService:
    def __init__(
        self,
        db: Session,
        git: GitSyncService | None = None,
        executor: DeployExecutor | None = None,
        runtime: StackRuntime | None = None,
        events: BuildEventBus | None = None,
    ):
        self.db = db
        self.git = git or GitSyncService()
        self.executor = executor or DeployExecutor(self.git, runtime or ComposeStackRuntime())
        self.events = events or build_events

    # ---------------------------------------------------------------- queries

    def get_deployment(self, deployment_id: UUID) -> Deployment | None:
        return self.db.get(Deployment, deployment_id)

    def list_deployments(self, stack_id: str, limit: int = 10, offset: int = 0) -> list[Deployment]:
        stmt = (
            select(Deployment)
            .where(Deployment.stack_id == stack_id)
            .order_by(Deployment.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt).all())

    def latest_successful(self, stack_id: str, exclude_id: UUID | None = None) -> Deployment | None:
        stmt = (
            select(Deployment)
            .where(Deployment.stack_id == stack_id, Deployment.status == DeploymentStatus.successful)
            .order_by(Deployment.completed_at.desc(), Deployment.created_at.desc())
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(Deployment.deployment_id != exclude_id)
        return self.db.scalar(stmt)

    def find_active_request(self, repo_id: UUID, commit_sha: str | None) -> BuildRequest | None:
        """A waiting or running request for the same commit, if any."""
        if not commit_sha:
            return None
        stmt = (
            select(BuildRequest)
            .where(
                BuildRequest.repo_id == repo_id,
                BuildRequest.commit_sha == commit_sha,
                BuildRequest.status.in_(ACTIVE_BUILD_STATUSES),
                BuildRequest.rollback_of_id.is_(None),
            )
            .limit(1)
        )
        return self.db.scalar(stmt)

    def get_request(self, build_id: str) -> BuildRequest | None:
        return self.db.scalar(select(BuildRequest).where(BuildRequest.build_id == build_id))

    def mark_stuck_builds(self, max_age_minutes: int | None = None) -> int:
        """Fail requests left ``running`` past the allowed age (worker died mid-build).

        A request only counts as stuck once it has also outlived its own build
        timeout plus the rollback budget.
        """
        age = max_age_minutes or settings.stuck_build_minutes
        now = datetime.now(UTC)
        stmt = select(BuildRequest).where(
            BuildRequest.status == BuildRequestStatus.running,
            BuildRequest.started_at < now - timedelta(minutes=age),
        )
        count = 0
        for request in self.db.scalars(stmt).all():
            started = request.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=UTC)
            allowed = max(timedelta(minutes=age), self._worker_budget(request.stack_id))
            if now - started < allowed:
                continue
            minutes = int(allowed.total_seconds() // 60)
            self.fail_interrupted(request, f"Build exceeded {minutes} minutes without finishing")
            count += 1
        self.db.flush()
        return count

    def _worker_budget(self, stack_id: str) -> timedelta:
        config = self.db.scalar(select(BuildConfig).where(BuildConfig.stack_id == stack_id))
        timeout = (config.timeout_seconds if config else None) or settings.default_build_timeout_seconds
        return timedelta(seconds=timeout + ROLLBACK_TIMEOUT_SECONDS + STUCK_GRACE_SECONDS)

    def cancel_waiting(self, request: BuildRequest, reason: str = "Cancelled before start") -> None:
        """Fail a request that never started and close the delivery that queued it."""
        request.status = BuildRequestStatus.failed
        request.error = reason
        request.finished_at = datetime.now(UTC)
        self._close_webhook_event(request, WebhookEventStatus.failed, None, reason)

    def fail_interrupted(self, request: BuildRequest, reason: str) -> None:
        now = datetime.now(UTC)
        request.status = BuildRequestStatus.failed
        request.error = reason
        request.finished_at = now
        if request.deployment_id:
            deployment = self.db.get(Deployment, request.deployment_id)
            if deployment and deployment.status not in TERMINAL_DEPLOYMENT_STATUSES:
                deployment.status = DeploymentStatus.failed
                deployment.error = reason
                deployment.completed_at = now
        self._close_webhook_event(request, WebhookEventStatus.failed, request.deployment_id, reason)

    # --------------------------------------------------------------- pipeline

    def create_deployment(self, request: BuildRequest, config: BuildConfig | None) -> Deployment:
        deployment = Deployment(
            stack_id=request.stack_id,
            repo_id=request.repo_id,
            config_id=config.config_id if config else None,
            build_id=request.build_id,
            commit_sha=request.commit_sha,
            commit_message=request.commit_message,
            commit_author=request.commit_author,
            branch=request.branch,
            tag=request.tag,
            status=DeploymentStatus.pending,
            trigger=request.trigger,
            triggered_by=request.triggered_by,
            build_log="",
            deployment_log="",
        )
        self.db.add(deployment)
        self.db.flush()
        request.deployment_id = deployment.deployment_id
        self.db.commit()
        return deployment

    def run_build(self, request: BuildRequest, cancel_check: Callable[[], bool] | None = None) -> Deployment:
        """Execute every phase for ``request``. Never raises for pipeline failures."""
        cancel_check = cancel_check or (lambda: False)
        repo = self.db.get(GitRepository, request.repo_id)
        config = repo.build_config if repo else None
        deployment = self.create_deployment(request, config)
        deployment.started_at = datetime.now(UTC)
        self.events.publish(
            events_mod.BUILD_STARTED,
            repo_id=request.repo_id,
            build_id=request.build_id,
            deployment_id=deployment.deployment_id,
        )

        if repo is None or config is None:
            reason = "Repository no longer exists" if repo is None else "No build configuration for stack"
            self._finish(deployment, request, DeploymentStatus.failed, error=reason)
            return deployment

        ctx = BuildContext(
            request=request,
            repo=repo,
            config=config,
            deployment=deployment,
            deadline=Deadline(config.timeout_seconds or settings.default_build_timeout_seconds),
            cancel_check=cancel_check,
        )

        rollback_target = None
        phases = BUILD_PHASES
        if request.rollback_of_id:
            rollback_target = self.db.get(Deployment, request.rollback_of_id)
            phases = ROLLBACK_PHASES

        try:
            for phase in phases:
                if cancel_check():
                    raise BuildCancelled(f"Cancelled before {phase}", phase=phase)
                self._enter_phase(ctx, phase)
                if phase == "deploy" and rollback_target is not None:
                    self._redeploy_target(ctx, rollback_target)
                else:
                    getattr(self, f"_phase_{phase}")(ctx)
                self._log(ctx, f"{PHASE_LABELS[phase]}: done")
            self._flush_logs(ctx)
            self._finish(deployment, request, DeploymentStatus.successful)
        except BuildCancelled as exc:
            self._log(ctx, f"Cancelled: {exc.message}")
            self._flush_logs(ctx)
            self._finish(deployment, request, DeploymentStatus.cancelled, error=exc.message)
        except PipelineError as exc:
            self._handle_failure(ctx, exc.phase or ctx.phase, exc.message)
        except Exception as exc:
            logger.exception("Unexpected error in %s phase of build %s", ctx.phase, request.build_id)
            self._handle_failure(ctx, ctx.phase, f"{type(exc).__name__}: {exc}")
        return deployment

    def _enter_phase(self, ctx: BuildContext, phase: str) -> None:
        ctx.phase = phase
        if phase in _DEPLOYMENT_LOG_PHASES:
            if ctx.deployment.status != DeploymentStatus.deploying:
                ctx.deployment.status = DeploymentStatus.deploying
        elif ctx.deployment.status == DeploymentStatus.pending:
            ctx.deployment.status = DeploymentStatus.building
        self._log(ctx, f"==> {PHASE_LABELS[phase]}")
        self._flush_logs(ctx)

    def _phase_sync(self, ctx: BuildContext) -> None:
        repo = ctx.repo
        timeout = min(self.git.timeout, ctx.deadline.remaining())
        commit = self.git.sync(repo, tag=ctx.request.tag, timeout=timeout, on_output=self._logger_for(ctx))
        ctx.commit = commit
        repo.last_synced_commit = commit.sha
        repo.last_synced_at = datetime.now(UTC)
        deployment = ctx.deployment
        deployment.commit_sha = deployment.commit_sha or commit.sha
        deployment.commit_message = deployment.commit_message or commit.message
        deployment.commit_author = deployment.commit_author or commit.author
        if not deployment.tag:
            deployment.branch = deployment.branch or commit.branch or repo.branch
        self._log(ctx, f"At {commit.sha[:12]} {commit.message}")
        self.db.commit()

    def _phase_pre_build(self, ctx: BuildContext) -> None:
        self.executor.run_commands(
            ctx.config.pre_build_commands or [],
            ctx.repo,
            ctx.config,
            deadline=ctx.deadline,
            log=self._logger_for(ctx),
            phase="pre_build",
            cancel_check=ctx.cancel_check,
        )

    def _phase_build(self, ctx: BuildContext) -> None:
        sha = ctx.commit.sha if ctx.commit else ctx.deployment.commit_sha
        artifact = self.executor.build(
            ctx.config,
            ctx.repo,
            commit_sha=sha,
            deadline=ctx.deadline,
            log=self._logger_for(ctx),
        )
        ctx.artifact = artifact
        self._record_artifact(ctx.deployment, artifact)

    def _phase_post_build(self, ctx: BuildContext) -> None:
        self.executor.run_commands(
            ctx.config.post_build_commands or [],
            ctx.repo,
            ctx.config,
            deadline=ctx.deadline,
            log=self._logger_for(ctx),
            phase="post_build",
            cancel_check=ctx.cancel_check,
        )

    def _phase_deploy(self, ctx: BuildContext) -> None:
        if ctx.artifact is None:
            raise PipelineError("Nothing to deploy: build produced no artifact", phase="deploy")
        self.executor.deploy(ctx.artifact, ctx.repo.stack_id, deadline=ctx.deadline, log=self._logger_for(ctx))

    def _phase_health_check(self, ctx: BuildContext) -> None:
        self.executor.health_check(ctx.config, deadline=ctx.deadline, log=self._logger_for(ctx))

    def _redeploy_target(self, ctx: BuildContext, target: Deployment | None) -> None:
        if target is None or target.status != DeploymentStatus.successful or target.stack_id != ctx.repo.stack_id:
            raise PipelineError("Rollback target is not a successful deployment of this stack", phase="deploy")
        deployment = ctx.deployment
        deployment.previous_deployment_id = target.deployment_id
        deployment.commit_sha = target.commit_sha
        deployment.commit_message = target.commit_message
        deployment.commit_author = target.commit_author
        deployment.branch = target.branch
        deployment.tag = target.tag
        self._log(ctx, f"Redeploying artifact of {target.deployment_id} ({(target.commit_sha or '')[:12]})")
        ctx.artifact = self.executor.redeploy(target, deadline=ctx.deadline, log=self._logger_for(ctx))
        deployment.image_ref = target.image_ref
        deployment.compose_snapshot = target.compose_snapshot
        deployment.env_snapshot_encrypted = target.env_snapshot_encrypted

    def _record_artifact(self, deployment: Deployment, artifact: BuildArtifact) -> None:
        deployment.image_ref = artifact.image_ref
        deployment.compose_snapshot = artifact.compose_text
        deployment.env_snapshot_encrypted = vault.seal(artifact.env_text) if artifact.env_text else None
        self.db.commit()

    def _handle_failure(self, ctx: BuildContext, phase: str, message: str) -> None:
        deployment = ctx.deployment
        error = f"{phase}: {message}"
        logger.error("Build %s failed at %s: %s", ctx.request.build_id, phase, message)
        self._log(ctx, f"FAILED {error}")

        status = DeploymentStatus.failed
        if ctx.config.rollback_on_failure and not ctx.request.rollback_of_id:
            previous = self.latest_successful(ctx.repo.stack_id, exclude_id=deployment.deployment_id)
            if previous is not None:
                status, error = self._rollback(ctx, previous, error)
        self._flush_logs(ctx)
        self._finish(deployment, ctx.request, status, error=error)

    def _rollback(self, ctx: BuildContext, previous: Deployment, error: str) -> tuple[DeploymentStatus, str]:
        ctx.phase = "rollback"
        self._log(ctx, f"==> Rolling back to {previous.deployment_id} ({(previous.commit_sha or '')[:12]})")
        try:
            self.executor.redeploy(
                previous,
                deadline=Deadline(ROLLBACK_TIMEOUT_SECONDS),
                log=self._logger_for(ctx),
            )
        except Exception as exc:
            logger.exception("Rollback of %s to %s failed", ctx.repo.stack_id, previous.deployment_id)
            reason = exc.message if isinstance(exc, PipelineError) else str(exc)
            self._log(ctx, f"Rollback failed: {reason}")
            return DeploymentStatus.failed, f"{error}; rollback to {previous.deployment_id} failed: {reason}"
        ctx.deployment.previous_deployment_id = previous.deployment_id
        self._log(ctx, "Rollback complete")
        return DeploymentStatus.rolled_back, error

    def _finish(
        self,
        deployment: Deployment,
        request: BuildRequest,
        status: DeploymentStatus,
        error: str | None = None,
    ) -> None:
        now = datetime.now(UTC)
        deployment.status = status
        deployment.completed_at = now
        if deployment.started_at:
            started = deployment.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=UTC)
            deployment.duration_seconds = round((now - started).total_seconds(), 3)
        if error:
            deployment.error = error[:10000]

        event_status = WebhookEventStatus.processed if status == DeploymentStatus.successful else WebhookEventStatus.failed
        self._close_webhook_event(request, event_status, deployment.deployment_id, error)
        self.db.commit()
        self._record_metric(status, deployment.duration_seconds)

        if status == DeploymentStatus.successful:
            event = events_mod.BUILD_COMPLETED
        elif status == DeploymentStatus.cancelled:
            event = events_mod.BUILD_CANCELLED
        else:
            event = events_mod.BUILD_FAILED
        self.events.publish(
            event,
            repo_id=request.repo_id,
            build_id=request.build_id,
            deployment_id=deployment.deployment_id,
            status=status.value,
            error=error,
        )

    def _close_webhook_event(
        self,
        request: BuildRequest,
        status: WebhookEventStatus,
        deployment_id: uuid.UUID | None,
        error: str | None,
    ) -> None:
        if not request.webhook_event_id:
            return
        event = self.db.get(WebhookEvent, request.webhook_event_id)
        if event is None or event.processed:
            return
        event.mark_processed(status, deployment_id=deployment_id, error=error)

    def _record_metric(self, status: DeploymentStatus, duration: float | None) -> None:
        try:
            from app.metrics import observe_build

            observe_build(status.value, duration or 0.0)
        except Exception:
            logger.debug("Failed to record build metric", exc_info=True)

    # ------------------------------------------------------------------ logs

    def _logger_for(self, ctx: BuildContext) -> Callable[[str], None]:
        return lambda line: self._log(ctx, line)

    def _log(self, ctx: BuildContext, line: str) -> None:
        """Append one line to the deployment's log and stream it to observers."""
        target = "deployment" if ctx.phase in _DEPLOYMENT_LOG_PHASES else "build"
        text = f"[{ctx.phase}] {line}"
        ctx.pending_lines[target].append(text)
        self.events.publish(
            events_mod.BUILD_LOG,
            repo_id=ctx.request.repo_id,
            build_id=ctx.request.build_id,
            deployment_id=ctx.deployment.deployment_id,
            stream=target,
            line=text,
        )
        if time.monotonic() - ctx.last_flush >= _LOG_FLUSH_SECONDS:
            self._flush_logs(ctx)

    def _flush_logs(self, ctx: BuildContext) -> None:
        deployment = ctx.deployment
        limit = settings.build_log_max_chars
        for target, lines in ctx.pending_lines.items():
            if not lines:
                continue
            chunk = "\n".join(lines) + "\n"
            lines.clear()
            if target == "build":
                deployment.build_log = _append_capped(deployment.build_log, chunk, limit)
            else:
                deployment.deployment_log = _append_capped(deployment.deployment_log, chunk, limit)
        ctx.last_flush = time.monotonic()
        self.db.commit()


def _append_capped(existing: str | None, chunk: str, limit: int) -> str:
    text = (existing or "") + chunk
    if len(text) > limit:
        logger.warning("Truncating build log (%d chars)", len(text))
        text = "[... earlier output truncated ...]\n" + text[-limit:]
    return text
