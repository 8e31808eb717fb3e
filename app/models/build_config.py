import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class BuildStrategy(str, enum.Enum):
    docker_build = "docker_build"
    compose_only = "compose_only"
    script = "script"


class BuildConfig(Base):
    __tablename__ = "build_configs"

    config_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stack_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    repo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("git_repositories.repo_id", ondelete="CASCADE"), nullable=False
    )
    strategy: Mapped[BuildStrategy] = mapped_column(
        Enum(BuildStrategy, name="buildstrategy"), default=BuildStrategy.compose_only
    )
    dockerfile_path: Mapped[str] = mapped_column(String(512), default="Dockerfile")
    compose_path: Mapped[str] = mapped_column(String(512), default="docker-compose.yml")
    env_file_path: Mapped[str] = mapped_column(String(512), default=".env")
    pre_build_commands: Mapped[list] = mapped_column(JSON, default=list)
    post_build_commands: Mapped[list] = mapped_column(JSON, default=list)
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=3600)
    auto_deploy: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_deploy_branches: Mapped[list] = mapped_column(JSON, default=list)
    rollback_on_failure: Mapped[bool] = mapped_column(Boolean, default=True)
    health_check_path: Mapped[str | None] = mapped_column(String(512))
    health_check_timeout: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    repository = relationship("GitRepository", back_populates="build_config")
    build_args = relationship(
        "BuildArg", back_populates="config", cascade="all, delete-orphan", order_by="BuildArg.name"
    )
    env_vars = relationship(
        "BuildEnvVar", back_populates="config", cascade="all, delete-orphan", order_by="BuildEnvVar.name"
    )


class BuildArg(Base):
    __tablename__ = "build_args"
    __table_args__ = (UniqueConstraint("config_id", "name", name="uq_build_args_config_name"),)

    arg_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("build_configs.config_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, default="")

    config = relationship("BuildConfig", back_populates="build_args")


class BuildEnvVar(Base):
    __tablename__ = "build_env_vars"
    __table_args__ = (UniqueConstraint("config_id", "name", name="uq_build_env_vars_config_name"),)

    env_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("build_configs.config_id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Sealed when is_secret is set
    value: Mapped[str] = mapped_column(Text, default="")
    is_secret: Mapped[bool] = mapped_column(Boolean, default=False)

    config = relationship("BuildConfig", back_populates="env_vars")
