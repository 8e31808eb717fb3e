"""Git Repository Service — manage repo records, credentials and webhook secrets."""

from __future__ import annotations

import logging
import secrets
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.git_repository import GitAuthType, GitProvider, GitRepository
from app.services.common import redact_url, safe_slug, validate_git_ref
from app.services.pipeline_errors import WorkingCopyBusyError
from app.services.secret_vault import vault

logger = logging.getLogger(__name__)

_CREDENTIAL_FIELDS = {
    GitAuthType.ssh_key: ("private_key", "passphrase"),
    GitAuthType.http_token: ("username", "token"),
}


class GitRepoService:
    def __init__(self, db: Session, git=None):
        self.db = db
        self._git = git

    @property
    def git(self):
        if self._git is None:
            from app.services.git_sync import GitSyncService

            self._git = GitSyncService()
        return self._git

    def create_repo(
        self,
        stack_id: str,
        url: str,
        *,
        branch: str = "main",
        auth_type: GitAuthType = GitAuthType.none,
        credentials: dict[str, str] | None = None,
        provider: GitProvider = GitProvider.generic,
        webhook_secret: str | None = None,
    ) -> GitRepository:
        safe_slug(stack_id)
        if not url or not url.strip():
            raise ValueError("URL is required")
        if self.get_by_stack(stack_id) is not None:
            raise ValueError(f"Stack {stack_id} already has a repository")
        repo = GitRepository(
            stack_id=stack_id,
            url=url.strip(),
            branch=validate_git_ref((branch or "main").strip()),
            auth_type=auth_type,
            provider=provider,
        )
        repo.credentials_encrypted = _seal_credentials(auth_type, credentials)
        if webhook_secret:
            repo.webhook_secret_encrypted = vault.seal(webhook_secret)
        self.db.add(repo)
        self.db.flush()
        logger.info("Registered repository %s for stack %s", redact_url(repo.url), stack_id)
        return repo

    def update_repo(self, repo_id: UUID, **kwargs) -> GitRepository:
        repo = self.get_by_id(repo_id)
        if not repo:
            raise LookupError("Repo not found")

        credentials = kwargs.pop("credentials", None)
        auth_type = kwargs.pop("auth_type", None)
        if auth_type is not None and auth_type != repo.auth_type:
            repo.auth_type = auth_type
            if credentials is None and auth_type != GitAuthType.none:
                raise ValueError(f"Credentials are required for {auth_type.value} auth")
            repo.credentials_encrypted = _seal_credentials(auth_type, credentials)
        elif credentials is not None:
            repo.credentials_encrypted = _seal_credentials(repo.auth_type, credentials)

        branch = kwargs.pop("branch", None)
        if branch is not None:
            repo.branch = validate_git_ref(branch.strip())
        url = kwargs.pop("url", None)
        stale_copy = False
        if url is not None:
            if not url.strip():
                raise ValueError("URL is required")
            if url.strip() != repo.url:
                # A different remote invalidates the working copy.
                self._ensure_not_building(repo)
                stale_copy = True
                repo.last_synced_commit = None
                repo.last_synced_at = None
            repo.url = url.strip()
        provider = kwargs.pop("provider", None)
        if provider is not None:
            repo.provider = provider
        if kwargs:
            raise ValueError(f"Unknown fields: {', '.join(sorted(kwargs))}")

        self.db.flush()
        if stale_copy:
            self.git.remove_working_copy(repo)
        return repo

    def delete_repo(self, repo_id: UUID) -> None:
        repo = self.get_by_id(repo_id)
        if not repo:
            raise LookupError("Repo not found")
        self._ensure_not_building(repo)
        self.db.delete(repo)
        self.db.flush()
        self.git.remove_working_copy(repo)
        logger.info("Deleted repository for stack %s", repo.stack_id)

    def _ensure_not_building(self, repo: GitRepository) -> None:
        """The worker owns the working copy while one of its builds is running."""
        running = self.db.scalar(
            select(BuildRequest.build_id)
            .where(BuildRequest.repo_id == repo.repo_id, BuildRequest.status == BuildRequestStatus.running)
            .limit(1)
        )
        if running is not None:
            raise WorkingCopyBusyError(f"Build {running} is running for stack {repo.stack_id}")

    def list_repos(self) -> list[GitRepository]:
        stmt = select(GitRepository).order_by(GitRepository.created_at.desc())
        return list(self.db.scalars(stmt).all())

    def get_by_id(self, repo_id: UUID) -> GitRepository | None:
        return self.db.get(GitRepository, repo_id)

    def get_by_stack(self, stack_id: str) -> GitRepository | None:
        return self.db.scalar(select(GitRepository).where(GitRepository.stack_id == stack_id))

    def require(self, repo_id: UUID) -> GitRepository:
        repo = self.get_by_id(repo_id)
        if not repo:
            raise LookupError("Repo not found")
        return repo

    def test_connection(self, repo_id: UUID) -> dict[str, object]:
        return self.git.test_connection(self.require(repo_id))

    def resolve_default_branch(self, repo_id: UUID) -> str:
        from app.services.git_auth import GitAuth
        from app.services.git_providers import get_provider

        repo = self.require(repo_id)
        auth = GitAuth()
        with auth.environment(repo) as env:
            return get_provider(repo.provider).resolve_default_branch(repo.url, auth.credentials_for(repo), env)

    def history(self, repo_id: UUID, limit: int = 10) -> list[dict[str, str | None]]:
        return [c.as_dict() for c in self.git.history(self.require(repo_id), limit=limit)]

    def list_files(self, repo_id: UUID, directory: str = "") -> list[str]:
        return self.git.list_files(self.require(repo_id), directory)

    def set_webhook_secret(self, repo_id: UUID, secret: str | None) -> None:
        """Store a webhook secret for a repo; ``None`` disables verification."""
        repo = self.require(repo_id)
        repo.webhook_secret_encrypted = vault.seal(secret) if secret else None
        self.db.flush()

    def generate_webhook_secret(self, repo_id: UUID) -> str:
        """Generate a random webhook secret, store it, and return the plaintext."""
        repo = self.require(repo_id)
        plaintext = secrets.token_hex(32)
        repo.webhook_secret_encrypted = vault.seal(plaintext)
        self.db.flush()
        return plaintext

    @staticmethod
    def serialize_repo(repo: GitRepository) -> dict[str, object]:
        return {
            "repo_id": str(repo.repo_id),
            "stack_id": repo.stack_id,
            "url": redact_url(repo.url),
            "branch": repo.branch,
            "auth_type": repo.auth_type.value,
            "provider": repo.provider.value,
            "has_credentials": bool(repo.credentials_encrypted),
            "has_webhook_secret": bool(repo.webhook_secret_encrypted),
            "last_synced_commit": repo.last_synced_commit,
            "last_synced_at": repo.last_synced_at.isoformat() if repo.last_synced_at else None,
            "created_at": repo.created_at.isoformat() if repo.created_at else None,
            "updated_at": repo.updated_at.isoformat() if repo.updated_at else None,
        }


def _seal_credentials(auth_type: GitAuthType, credentials: dict[str, str] | None) -> str | None:
    if auth_type == GitAuthType.none:
        return None
    allowed = _CREDENTIAL_FIELDS[auth_type]
    cleaned = {k: v for k, v in (credentials or {}).items() if k in allowed and v}
    required = "private_key" if auth_type == GitAuthType.ssh_key else "token"
    if required not in cleaned:
        raise ValueError(f"{required} is required for {auth_type.value} auth")
    if "passphrase" in cleaned:
        from app.services.git_auth import unlock_private_key

        unlock_private_key(cleaned["private_key"], cleaned["passphrase"])
    return vault.seal_json(cleaned)
