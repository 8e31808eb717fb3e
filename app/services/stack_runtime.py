"""Stack Runtime — the boundary to whatever actually runs compose stacks."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from app.config import settings
from app.services.common import safe_slug
from app.services.pipeline_errors import DeployError
from app.services.process_runner import run_command

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "compose.yaml"
ENV_FILENAME = ".env"
DEFAULT_APPLY_TIMEOUT = 600


class StackRuntime(Protocol):
    def apply(
        self,
        stack_id: str,
        compose_text: str,
        env_text: str,
        *,
        on_output: Callable[[str], None] | None = None,
        timeout: float | None = None,
    ) -> None:
        """Bring the stack to the given definition. Raises DeployError on failure."""


class ComposeStackRuntime:
    """Writes the stack files under ``<data_dir>/stacks/<stack_id>`` and runs ``docker compose up``."""

    def __init__(self, stacks_dir: str | os.PathLike | None = None, docker_binary: str | None = None):
        self.stacks_dir = Path(stacks_dir or Path(settings.data_dir) / "stacks")
        self.docker_binary = docker_binary or settings.docker_binary

    def stack_dir(self, stack_id: str) -> Path:
        return self.stacks_dir / safe_slug(stack_id)

    def write_files(self, stack_id: str, compose_text: str, env_text: str) -> Path:
        target = self.stack_dir(stack_id)
        target.mkdir(parents=True, exist_ok=True)
        (target / COMPOSE_FILENAME).write_text(compose_text)
        env_path = target / ENV_FILENAME
        fd = os.open(env_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(env_text)
        os.chmod(env_path, 0o600)
        return target

    def apply(
        self,
        stack_id: str,
        compose_text: str,
        env_text: str,
        *,
        on_output: Callable[[str], None] | None = None,
        timeout: float | None = None,
    ) -> None:
        target = self.write_files(stack_id, compose_text, env_text)
        result = run_command(
            [
                self.docker_binary,
                "compose",
                "-p",
                safe_slug(stack_id).lower(),
                "-f",
                COMPOSE_FILENAME,
                "--env-file",
                ENV_FILENAME,
                "up",
                "-d",
                "--remove-orphans",
            ],
            cwd=target,
            timeout=timeout or DEFAULT_APPLY_TIMEOUT,
            on_output=on_output,
            phase="deploy",
        )
        if not result.ok:
            raise DeployError(f"docker compose up failed (exit {result.exit_code}): {result.tail(500)}")
        logger.info("Applied stack %s", stack_id)
