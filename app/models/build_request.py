"""Build Request — persisted queue item; pending rows survive a restart."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.deployment import DeploymentTrigger


class BuildRequestStatus(str, enum.Enum):
    requested = "requested"
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


PENDING_BUILD_STATUSES = (BuildRequestStatus.requested, BuildRequestStatus.queued)
ACTIVE_BUILD_STATUSES = (*PENDING_BUILD_STATUSES, BuildRequestStatus.running)


def new_build_id() -> str:
    return uuid.uuid4().hex


class BuildRequest(Base):
    __tablename__ = "build_requests"

    request_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    build_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=new_build_id)
    repo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("git_repositories.repo_id", ondelete="CASCADE"), nullable=False, index=True
    )
    stack_id: Mapped[str] = mapped_column(String(120), nullable=False)
    trigger: Mapped[DeploymentTrigger] = mapped_column(
        Enum(DeploymentTrigger, name="deploymenttrigger"), default=DeploymentTrigger.webhook
    )
    triggered_by: Mapped[str | None] = mapped_column(String(255))
    webhook_event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.event_id", ondelete="SET NULL")
    )
    # Set for rollback requests: redeploy this deployment's artifact, no build
    rollback_of_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deployments.deployment_id", ondelete="SET NULL")
    )
    commit_sha: Mapped[str | None] = mapped_column(String(64))
    commit_message: Mapped[str | None] = mapped_column(Text)
    commit_author: Mapped[str | None] = mapped_column(String(255))
    branch: Mapped[str | None] = mapped_column(String(255))
    tag: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[BuildRequestStatus] = mapped_column(
        Enum(BuildRequestStatus, name="buildrequeststatus"), default=BuildRequestStatus.requested, index=True
    )
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    deployment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deployments.deployment_id", ondelete="SET NULL")
    )
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    repository = relationship("GitRepository", back_populates="build_requests")
