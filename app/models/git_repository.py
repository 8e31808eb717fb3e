import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class GitAuthType(str, enum.Enum):
    none = "none"
    ssh_key = "ssh_key"
    http_token = "http_token"


class GitProvider(str, enum.Enum):
    github = "github"
    gitlab = "gitlab"
    bitbucket = "bitbucket"
    generic = "generic"


class GitRepository(Base):
    __tablename__ = "git_repositories"

    repo_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stack_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    branch: Mapped[str] = mapped_column(String(255), default="main")
    auth_type: Mapped[GitAuthType] = mapped_column(Enum(GitAuthType, name="gitauthtype"), default=GitAuthType.none)
    # Sealed JSON: {"username", "token"} or {"private_key", "passphrase"}
    credentials_encrypted: Mapped[str | None] = mapped_column(Text)
    webhook_secret_encrypted: Mapped[str | None] = mapped_column(Text)
    provider: Mapped[GitProvider] = mapped_column(
        Enum(GitProvider, name="gitprovider"), default=GitProvider.generic
    )
    last_synced_commit: Mapped[str | None] = mapped_column(String(64))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    build_config = relationship(
        "BuildConfig", back_populates="repository", uselist=False, cascade="all, delete-orphan"
    )
    webhook_events = relationship("WebhookEvent", back_populates="repository", cascade="all, delete-orphan")
    deployments = relationship(
        "Deployment",
        back_populates="repository",
        cascade="all, delete-orphan",
        foreign_keys="Deployment.repo_id",
    )
    build_requests = relationship("BuildRequest", back_populates="repository", cascade="all, delete-orphan")
