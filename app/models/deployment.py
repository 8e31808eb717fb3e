import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class DeploymentStatus(str, enum.Enum):
    pending = "pending"
    building = "building"
    deploying = "deploying"
    successful = "successful"
    failed = "failed"
    rolled_back = "rolled_back"
    cancelled = "cancelled"


TERMINAL_DEPLOYMENT_STATUSES = frozenset(
    {
        DeploymentStatus.successful,
        DeploymentStatus.failed,
        DeploymentStatus.rolled_back,
        DeploymentStatus.cancelled,
    }
)


class DeploymentTrigger(str, enum.Enum):
    webhook = "webhook"
    manual = "manual"
    scheduled = "scheduled"
    api = "api"


class Deployment(Base):
    __tablename__ = "deployments"

    deployment_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stack_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    repo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("git_repositories.repo_id", ondelete="CASCADE"), nullable=False, index=True
    )
    config_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("build_configs.config_id", ondelete="SET NULL")
    )
    build_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    commit_sha: Mapped[str | None] = mapped_column(String(64))
    commit_message: Mapped[str | None] = mapped_column(Text)
    commit_author: Mapped[str | None] = mapped_column(String(255))
    branch: Mapped[str | None] = mapped_column(String(255))
    tag: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[DeploymentStatus] = mapped_column(
        Enum(DeploymentStatus, name="deploymentstatus"), default=DeploymentStatus.pending, index=True
    )
    trigger: Mapped[DeploymentTrigger] = mapped_column(
        Enum(DeploymentTrigger, name="deploymenttrigger"), default=DeploymentTrigger.webhook
    )
    triggered_by: Mapped[str | None] = mapped_column(String(255))
    previous_deployment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deployments.deployment_id", ondelete="SET NULL")
    )
    build_log: Mapped[str] = mapped_column(Text, default="")
    deployment_log: Mapped[str] = mapped_column(Text, default="")
    error: Mapped[str | None] = mapped_column(Text)
    # Artifact retained so a later failure can roll back to this deployment
    image_ref: Mapped[str | None] = mapped_column(String(512))
    compose_snapshot: Mapped[str | None] = mapped_column(Text)
    env_snapshot_encrypted: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )

    repository = relationship("GitRepository", back_populates="deployments", foreign_keys=[repo_id])
    previous_deployment = relationship("Deployment", remote_side=[deployment_id])
