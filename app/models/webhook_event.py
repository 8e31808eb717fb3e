"""Webhook Event — one record per inbound delivery accepted past verification."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.git_repository import GitProvider


class WebhookEventStatus(str, enum.Enum):
    received = "received"
    ignored = "ignored"
    queued = "queued"
    processed = "processed"
    failed = "failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("git_repositories.repo_id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[GitProvider] = mapped_column(Enum(GitProvider, name="gitprovider"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    payload: Mapped[str] = mapped_column(Text, default="")
    headers: Mapped[dict] = mapped_column(JSON, default=dict)
    signature: Mapped[str | None] = mapped_column(String(255))
    branch: Mapped[str | None] = mapped_column(String(255))
    tag: Mapped[str | None] = mapped_column(String(255))
    commit_sha: Mapped[str | None] = mapped_column(String(64))
    commit_message: Mapped[str | None] = mapped_column(Text)
    commit_author: Mapped[str | None] = mapped_column(String(255))
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus, name="webhookeventstatus"), default=WebhookEventStatus.received
    )
    build_id: Mapped[str | None] = mapped_column(String(36), index=True)
    deployment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deployments.deployment_id", ondelete="SET NULL")
    )
    error: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    repository = relationship("GitRepository", back_populates="webhook_events")

    def mark_processed(
        self,
        status: WebhookEventStatus,
        deployment_id: uuid.UUID | None = None,
        error: str | None = None,
    ) -> None:
        """Close out the event. Outcome fields are write-once."""
        if self.processed:
            raise ValueError(f"Webhook event {self.event_id} already processed")
        self.processed = True
        self.processed_at = datetime.now(UTC)
        self.status = status
        if deployment_id is not None:
            self.deployment_id = deployment_id
        if error:
            self.error = error[:4000]
