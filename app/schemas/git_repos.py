"""Pydantic schemas for git repositories."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.git_repository import GitAuthType, GitProvider


class GitCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str | None = None
    token: str | None = None
    private_key: str | None = None
    passphrase: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


class GitRepoCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stack_id: str = Field(..., min_length=1, max_length=120)
    url: str = Field(..., min_length=1, max_length=1024)
    branch: str = "main"
    auth_type: GitAuthType = GitAuthType.none
    credentials: GitCredentials | None = None
    provider: GitProvider = GitProvider.generic
    webhook_secret: str | None = None


class GitRepoUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(None, min_length=1, max_length=1024)
    branch: str | None = None
    auth_type: GitAuthType | None = None
    credentials: GitCredentials | None = None
    provider: GitProvider | None = None


class GitRepoRead(BaseModel):
    repo_id: UUID
    stack_id: str
    url: str
    branch: str
    auth_type: GitAuthType
    provider: GitProvider
    has_credentials: bool
    has_webhook_secret: bool
    last_synced_commit: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookSecretUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    secret: str | None = Field(None, min_length=8, max_length=255)
    generate: bool = False


class CommitRead(BaseModel):
    sha: str
    author: str | None = None
    date: str | None = None
    message: str | None = None
    branch: str | None = None
