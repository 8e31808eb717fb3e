"""Pydantic schemas for build configs, build requests and deployments."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.build_config import BuildStrategy
from app.models.deployment import DeploymentStatus, DeploymentTrigger


class BuildEnvVarWrite(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    # Omit to keep the stored value of an existing secret
    value: str | None = None
    is_secret: bool = False


class BuildConfigWrite(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: BuildStrategy | None = None
    dockerfile_path: str | None = None
    compose_path: str | None = None
    env_file_path: str | None = None
    pre_build_commands: list[str] | None = None
    post_build_commands: list[str] | None = None
    timeout_seconds: int | None = Field(None, ge=1)
    auto_deploy: bool | None = None
    auto_deploy_branches: list[str] | None = None
    rollback_on_failure: bool | None = None
    health_check_path: str | None = None
    health_check_timeout: int | None = Field(None, ge=1)
    build_args: dict[str, str] | None = None
    env_vars: list[BuildEnvVarWrite] | None = None


class BuildEnvVarRead(BaseModel):
    name: str
    value: str | None = None
    is_secret: bool


class BuildConfigRead(BaseModel):
    config_id: UUID
    stack_id: str
    repo_id: UUID
    strategy: BuildStrategy
    dockerfile_path: str
    compose_path: str
    env_file_path: str
    pre_build_commands: list[str]
    post_build_commands: list[str]
    timeout_seconds: int
    auto_deploy: bool
    auto_deploy_branches: list[str]
    rollback_on_failure: bool
    health_check_path: str | None = None
    health_check_timeout: int | None = None
    build_args: dict[str, str]
    env_vars: list[BuildEnvVarRead]


class BuildTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branch: str | None = None
    tag: str | None = None
    trigger: DeploymentTrigger = DeploymentTrigger.manual

    @field_validator("trigger")
    @classmethod
    def not_webhook(cls, v: DeploymentTrigger) -> DeploymentTrigger:
        if v == DeploymentTrigger.webhook:
            raise ValueError("Webhook builds are created by webhook deliveries")
        return v


class BuildAccepted(BaseModel):
    build_id: str
    status: str


class BuildRead(BaseModel):
    build_id: str
    repo_id: UUID
    stack_id: str
    status: str
    trigger: DeploymentTrigger
    triggered_by: str | None = None
    commit_sha: str | None = None
    branch: str | None = None
    tag: str | None = None
    cancel_requested: bool
    deployment_id: UUID | None = None
    rollback_of_id: UUID | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class DeploymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deployment_id: UUID
    stack_id: str
    repo_id: UUID
    config_id: UUID | None = None
    build_id: str | None = None
    commit_sha: str | None = None
    commit_message: str | None = None
    commit_author: str | None = None
    branch: str | None = None
    tag: str | None = None
    status: DeploymentStatus
    trigger: DeploymentTrigger
    triggered_by: str | None = None
    previous_deployment_id: UUID | None = None
    image_ref: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    created_at: datetime | None = None


class DeploymentDetail(DeploymentRead):
    build_log: str | None = None
    deployment_log: str | None = None
