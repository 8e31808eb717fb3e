"""Build Service — creating, enqueuing and cancelling build requests."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.deployment import Deployment, DeploymentStatus, DeploymentTrigger
from app.models.git_repository import GitRepository
from app.services.common import validate_git_ref

logger = logging.getLogger(__name__)


class BuildService:
    def __init__(self, db: Session, queue=None) -> None:
        self.db = db
        self.queue = queue

    def get(self, build_id: str) -> BuildRequest | None:
        return self.db.scalar(select(BuildRequest).where(BuildRequest.build_id == build_id))

    def list_for_repo(self, repo_id: UUID, limit: int = 20) -> list[BuildRequest]:
        stmt = (
            select(BuildRequest)
            .where(BuildRequest.repo_id == repo_id)
            .order_by(BuildRequest.created_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def create_request(
        self,
        repo: GitRepository,
        *,
        trigger: DeploymentTrigger,
        triggered_by: str | None = None,
        commit_sha: str | None = None,
        commit_message: str | None = None,
        commit_author: str | None = None,
        branch: str | None = None,
        tag: str | None = None,
        webhook_event_id: UUID | None = None,
        rollback_of_id: UUID | None = None,
    ) -> BuildRequest:
        """Persist a request and hand it to the queue when one runs in this process.

        Without a local queue the request stays ``requested`` for a worker
        process to claim.
        """
        request = BuildRequest(
            repo_id=repo.repo_id,
            stack_id=repo.stack_id,
            trigger=trigger,
            triggered_by=triggered_by,
            commit_sha=commit_sha,
            commit_message=commit_message,
            commit_author=commit_author,
            branch=branch if not tag else None,
            tag=tag,
            webhook_event_id=webhook_event_id,
            rollback_of_id=rollback_of_id,
            status=BuildRequestStatus.requested,
        )
        self.db.add(request)
        self.db.flush()
        logger.info(
            "Build %s requested for stack %s (%s, %s)",
            request.build_id,
            repo.stack_id,
            trigger.value,
            (commit_sha or "HEAD")[:12],
        )
        if self.queue is not None:
            self.queue.enqueue(self.db, request)
        return request

    def trigger_manual(
        self,
        stack_id: str,
        *,
        triggered_by: str | None,
        trigger: DeploymentTrigger = DeploymentTrigger.manual,
        branch: str | None = None,
        tag: str | None = None,
    ) -> BuildRequest:
        from app.services.git_repo_service import GitRepoService

        repo = GitRepoService(self.db).get_by_stack(stack_id)
        if repo is None:
            raise LookupError(f"No repository for stack {stack_id}")
        if repo.build_config is None:
            raise ValueError(f"Stack {stack_id} has no build configuration")
        if branch:
            validate_git_ref(branch)
            if branch != repo.branch:
                raise ValueError(f"Stack {stack_id} tracks branch {repo.branch}, not {branch}")
        if tag:
            validate_git_ref(tag, label="tag")
        return self.create_request(
            repo,
            trigger=trigger,
            triggered_by=triggered_by,
            branch=branch or repo.branch,
            tag=tag,
        )

    def request_rollback(self, deployment_id: UUID, *, triggered_by: str | None) -> BuildRequest:
        target = self.db.get(Deployment, deployment_id)
        if target is None:
            raise LookupError("Deployment not found")
        if target.status != DeploymentStatus.successful:
            raise ValueError("Only successful deployments can be rolled back to")
        if not target.compose_snapshot:
            raise ValueError("Deployment has no recorded artifact")
        repo = self.db.get(GitRepository, target.repo_id)
        if repo is None:
            raise LookupError("Repository not found")
        return self.create_request(
            repo,
            trigger=DeploymentTrigger.manual,
            triggered_by=triggered_by,
            commit_sha=target.commit_sha,
            commit_message=target.commit_message,
            commit_author=target.commit_author,
            branch=target.branch,
            tag=target.tag,
            rollback_of_id=target.deployment_id,
        )

    def cancel(self, build_id: str) -> str:
        request = self.get(build_id)
        if request is None:
            raise LookupError("Build not found")
        if self.queue is not None:
            outcome = self.queue.cancel(build_id)
            self.db.expire_all()
            return outcome or "finished"

        # No worker in this process: record intent for whichever worker holds it.
        if request.status in (BuildRequestStatus.requested, BuildRequestStatus.queued):
            from app.services.deploy_service import DeployService

            DeployService(self.db).cancel_waiting(request)
            self.db.flush()
            return "cancelled"
        if request.status == BuildRequestStatus.running:
            request.cancel_requested = True
            self.db.flush()
            return "cancelling"
        return "finished"


def serialize_build(request: BuildRequest) -> dict:
    return {
        "build_id": request.build_id,
        "repo_id": str(request.repo_id),
        "stack_id": request.stack_id,
        "status": request.status.value,
        "trigger": request.trigger.value,
        "triggered_by": request.triggered_by,
        "commit_sha": request.commit_sha,
        "branch": request.branch,
        "tag": request.tag,
        "cancel_requested": request.cancel_requested,
        "deployment_id": str(request.deployment_id) if request.deployment_id else None,
        "rollback_of_id": str(request.rollback_of_id) if request.rollback_of_id else None,
        "error": request.error,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "started_at": request.started_at.isoformat() if request.started_at else None,
        "finished_at": request.finished_at.isoformat() if request.finished_at else None,
    }
