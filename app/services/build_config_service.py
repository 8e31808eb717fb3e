"""Per-stack build settings and the build args and env vars that go with them."""

from __future__ import annotations

import logging
import posixpath
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.build_config import BuildArg, BuildConfig, BuildEnvVar, BuildStrategy
from app.services.secret_vault import vault

logger = logging.getLogger(__name__)

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Build-arg values are handed to the docker client through its environment
_RESERVED_BUILD_ARG_NAMES = {"PATH", "HOME", "USER", "TMPDIR"}
_PATH_FIELDS = ("dockerfile_path", "compose_path", "env_file_path")
_SIMPLE_FIELDS = (
    "pre_build_commands",
    "post_build_commands",
    "timeout_seconds",
    "auto_deploy",
    "auto_deploy_branches",
    "rollback_on_failure",
    "health_check_path",
    "health_check_timeout",
)
MAX_TIMEOUT_SECONDS = 6 * 3600


def validate_relative_path(value: str, field: str) -> str:
    """Paths inside the working copy: relative and without ``..`` escapes."""
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{field} is required")
    if value.startswith("/") or "\x00" in value:
        raise ValueError(f"{field} must be relative to the repository root")
    normalized = posixpath.normpath(value)
    if normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"{field} must stay inside the repository")
    return normalized


class BuildConfigService:
    def __init__(self, db: Session):
        self.db = db

    def get_for_stack(self, stack_id: str) -> BuildConfig | None:
        return self.db.scalar(select(BuildConfig).where(BuildConfig.stack_id == stack_id))

    def upsert(self, stack_id: str, **fields) -> BuildConfig:
        from app.services.git_repo_service import GitRepoService

        repo = GitRepoService(self.db).get_by_stack(stack_id)
        if repo is None:
            raise LookupError(f"No repository for stack {stack_id}")

        config = self.get_for_stack(stack_id)
        if config is None:
            config = BuildConfig(
                stack_id=stack_id,
                repo_id=repo.repo_id,
                strategy=BuildStrategy.compose_only,
                pre_build_commands=[],
                post_build_commands=[],
                auto_deploy_branches=[],
                timeout_seconds=settings.default_build_timeout_seconds,
            )
            self.db.add(config)

        build_args = fields.pop("build_args", None)
        env_vars = fields.pop("env_vars", None)

        strategy = fields.pop("strategy", None)
        if strategy is not None:
            config.strategy = BuildStrategy(strategy)
        for name in _PATH_FIELDS:
            value = fields.pop(name, None)
            if value is not None:
                setattr(config, name, validate_relative_path(value, name))
        for name in _SIMPLE_FIELDS:
            if name in fields:
                setattr(config, name, fields.pop(name))
        if fields:
            raise ValueError(f"Unknown fields: {', '.join(sorted(fields))}")

        self._validate(config)
        if build_args is not None:
            self.set_build_args(config, build_args)
        if env_vars is not None:
            self.set_env_vars(config, env_vars)
        self.db.flush()
        logger.info("Build config saved for stack %s (%s)", stack_id, config.strategy.value)
        return config

    def _validate(self, config: BuildConfig) -> None:
        timeout = config.timeout_seconds
        if timeout is not None and not (1 <= timeout <= MAX_TIMEOUT_SECONDS):
            raise ValueError(f"timeout_seconds must be between 1 and {MAX_TIMEOUT_SECONDS}")
        for name in ("pre_build_commands", "post_build_commands", "auto_deploy_branches"):
            value = getattr(config, name) or []
            if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
                raise ValueError(f"{name} must be a list of non-empty strings")
        if config.health_check_timeout is not None and config.health_check_timeout < 1:
            raise ValueError("health_check_timeout must be positive")

    def set_build_args(self, config: BuildConfig, values: dict[str, str]) -> None:
        config.build_args.clear()
        self.db.flush()
        for name, value in sorted(values.items()):
            if not _ENV_NAME_RE.match(name):
                raise ValueError(f"Invalid build arg name: {name!r}")
            if name in _RESERVED_BUILD_ARG_NAMES or name.startswith("DOCKER_"):
                raise ValueError(f"Build arg name {name} is reserved")
            config.build_args.append(BuildArg(name=name, value=str(value)))

    def set_env_vars(self, config: BuildConfig, values: list[dict]) -> None:
        """Replace env vars; entries are ``{"name", "value", "is_secret"}``."""
        existing = {var.name: var for var in config.env_vars}
        config.env_vars.clear()
        self.db.flush()
        seen = set()
        for item in values:
            name = item.get("name", "")
            if not _ENV_NAME_RE.match(name):
                raise ValueError(f"Invalid env var name: {name!r}")
            if name in seen:
                raise ValueError(f"Duplicate env var: {name}")
            seen.add(name)
            is_secret = bool(item.get("is_secret"))
            value = item.get("value")
            if value is None:
                # Keep a secret whose value the client never saw
                previous = existing.get(name)
                if previous is None or previous.is_secret != is_secret:
                    raise ValueError(f"Value required for env var {name}")
                config.env_vars.append(BuildEnvVar(name=name, value=previous.value, is_secret=is_secret))
                continue
            stored = vault.seal(str(value)) if is_secret else str(value)
            config.env_vars.append(BuildEnvVar(name=name, value=stored, is_secret=is_secret))

    @staticmethod
    def serialize(config: BuildConfig) -> dict[str, object]:
        return {
            "config_id": str(config.config_id),
            "stack_id": config.stack_id,
            "repo_id": str(config.repo_id),
            "strategy": config.strategy.value,
            "dockerfile_path": config.dockerfile_path,
            "compose_path": config.compose_path,
            "env_file_path": config.env_file_path,
            "pre_build_commands": list(config.pre_build_commands or []),
            "post_build_commands": list(config.post_build_commands or []),
            "timeout_seconds": config.timeout_seconds,
            "auto_deploy": config.auto_deploy,
            "auto_deploy_branches": list(config.auto_deploy_branches or []),
            "rollback_on_failure": config.rollback_on_failure,
            "health_check_path": config.health_check_path,
            "health_check_timeout": config.health_check_timeout,
            "build_args": {arg.name: arg.value for arg in config.build_args},
            "env_vars": [
                {"name": var.name, "value": None if var.is_secret else var.value, "is_secret": var.is_secret}
                for var in config.env_vars
            ],
        }
