"""Deploy Executor — build strategies and the steps that put a stack live."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from app.config import settings
from app.models.build_config import BuildConfig, BuildStrategy
from app.models.deployment import Deployment
from app.models.git_repository import GitRepository
from app.services.git_sync import GitSyncService
from app.services.pipeline_errors import BuildCancelled, BuildError, DeployError, PathTraversalError
from app.services.process_runner import Deadline, run_command
from app.services.secret_vault import SecretVault, vault
from app.services.stack_runtime import StackRuntime

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]
CancelCheck = Callable[[], bool]

_ENV_KEY_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=")
_NEEDS_QUOTES_RE = re.compile(r"[\s#'\"$\\]")


@dataclass
class BuildArtifact:
    strategy: BuildStrategy
    compose_text: str
    env_text: str
    commit_sha: str | None = None
    image_ref: str | None = None


def _quote_env_value(value: str) -> str:
    if not value or not _NEEDS_QUOTES_RE.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def merge_env(base_text: str, overrides: dict[str, str]) -> str:
    """Env file text with ``overrides`` replacing same-named keys, appended in order."""
    kept = []
    for line in base_text.splitlines():
        match = _ENV_KEY_RE.match(line)
        if match and match.group(1) in overrides:
            continue
        kept.append(line)
    kept.extend(f"{name}={_quote_env_value(value)}" for name, value in overrides.items())
    text = "\n".join(kept)
    return f"{text}\n" if text else ""


class DeployExecutor:
    def __init__(
        self,
        git: GitSyncService,
        runtime: StackRuntime,
        secret_vault: SecretVault | None = None,
    ):
        self.git = git
        self.runtime = runtime
        self.vault = secret_vault or vault

    @staticmethod
    def image_name(stack_id: str) -> str:
        return f"{settings.image_prefix}-{stack_id}".lower()

    def build_env(self, config: BuildConfig) -> dict[str, str]:
        env = {}
        for var in config.env_vars:
            env[var.name] = self.vault.open(var.value) if var.is_secret else var.value
        return env

    def run_commands(
        self,
        commands: list[str],
        repo: GitRepository,
        config: BuildConfig,
        *,
        deadline: Deadline,
        log: LogFn,
        phase: str,
        cancel_check: CancelCheck | None = None,
    ) -> None:
        """Run user commands in declared order; stop at the first non-zero exit."""
        work_dir = self.git.working_copy(repo)
        env = self.build_env(config)
        for index, command in enumerate(commands or [], start=1):
            if cancel_check is not None and cancel_check():
                raise BuildCancelled(f"Cancelled before {phase} command #{index}", phase=phase)
            log(f"$ {command}")
            result = run_command(
                ["/bin/sh", "-c", command],
                cwd=work_dir,
                env=env,
                timeout=deadline.remaining(),
                on_output=log,
                phase=phase,
                display=f"{phase} command #{index}",
            )
            if not result.ok:
                raise BuildError(f"{phase} command #{index} exited with {result.exit_code}", phase=phase)

    def read_compose(self, repo: GitRepository, config: BuildConfig) -> str:
        try:
            return self.git.read_file(repo, config.compose_path or "docker-compose.yml").decode("utf-8")
        except FileNotFoundError as exc:
            raise BuildError(f"Compose file not found: {config.compose_path}") from exc
        except PathTraversalError as exc:
            raise BuildError(str(exc)) from exc

    def read_env(self, repo: GitRepository, config: BuildConfig) -> str:
        base = ""
        if config.env_file_path:
            try:
                base = self.git.read_file(repo, config.env_file_path).decode("utf-8")
            except FileNotFoundError:
                base = ""
            except PathTraversalError as exc:
                raise BuildError(str(exc)) from exc
        return merge_env(base, self.build_env(config))

    def build(
        self,
        config: BuildConfig,
        repo: GitRepository,
        *,
        commit_sha: str | None,
        deadline: Deadline,
        log: LogFn,
    ) -> BuildArtifact:
        image_ref = None
        if config.strategy == BuildStrategy.docker_build:
            image_ref = self._docker_build(config, repo, commit_sha=commit_sha, deadline=deadline, log=log)
        elif config.strategy == BuildStrategy.compose_only:
            log("compose_only: using compose definition and images as-is")
        else:
            log("script: build performed by pre/post-build commands")
        return BuildArtifact(
            strategy=config.strategy,
            compose_text=self.read_compose(repo, config),
            env_text=self.read_env(repo, config),
            commit_sha=commit_sha,
            image_ref=image_ref,
        )

    def _docker_build(
        self,
        config: BuildConfig,
        repo: GitRepository,
        *,
        commit_sha: str | None,
        deadline: Deadline,
        log: LogFn,
    ) -> str:
        try:
            dockerfile = self.git.resolve_path(repo, config.dockerfile_path or "Dockerfile")
        except PathTraversalError as exc:
            raise BuildError(str(exc)) from exc
        if not dockerfile.is_file():
            raise BuildError(f"Dockerfile not found: {config.dockerfile_path}")

        name = self.image_name(repo.stack_id)
        image_ref = f"{name}:{(commit_sha or 'latest')[:12]}"
        args = [settings.docker_binary, "build", "-t", image_ref, "-t", f"{name}:latest"]
        # Values reach docker through the environment so they stay off argv
        build_env = {}
        for build_arg in config.build_args:
            args += ["--build-arg", build_arg.name]
            build_env[build_arg.name] = build_arg.value
        args += ["-f", str(dockerfile), "."]

        log(f"Building image {image_ref}")
        result = run_command(
            args,
            cwd=self.git.working_copy(repo),
            env=build_env,
            timeout=deadline.remaining(),
            on_output=log,
            phase="build",
            display=f"docker build -t {image_ref}",
        )
        if not result.ok:
            raise BuildError(f"docker build exited with {result.exit_code}")
        return image_ref

    def deploy(self, artifact: BuildArtifact, stack_id: str, *, deadline: Deadline, log: LogFn) -> None:
        log(f"Applying stack {stack_id}")
        self.runtime.apply(
            stack_id,
            artifact.compose_text,
            artifact.env_text,
            on_output=log,
            timeout=deadline.remaining(),
        )

    def health_check(self, config: BuildConfig, *, deadline: Deadline, log: LogFn) -> None:
        if not config.health_check_path:
            return
        path = config.health_check_path
        if path.startswith(("http://", "https://")):
            url = path
        else:
            url = f"{settings.health_check_base_url.rstrip('/')}/{path.lstrip('/')}"
        budget = min(config.health_check_timeout or settings.health_check_default_timeout, deadline.remaining())
        ends_at = time.monotonic() + budget
        last_error = "no response"
        log(f"Health check {url} (up to {budget:.0f}s)")
        with httpx.Client(timeout=5.0, follow_redirects=True) as client:
            while True:
                try:
                    resp = client.get(url)
                    if 200 <= resp.status_code < 300:
                        log(f"Health check passed ({resp.status_code})")
                        return
                    last_error = f"HTTP {resp.status_code}"
                except httpx.HTTPError as exc:
                    last_error = type(exc).__name__
                if time.monotonic() + settings.health_check_interval_seconds > ends_at:
                    break
                time.sleep(settings.health_check_interval_seconds)
        raise DeployError(f"Health check failed for {url}: {last_error}", phase="health_check")

    def artifact_of(self, deployment: Deployment) -> BuildArtifact:
        if not deployment.compose_snapshot:
            raise DeployError(f"Deployment {deployment.deployment_id} has no recorded artifact")
        env_text = self.vault.open(deployment.env_snapshot_encrypted) if deployment.env_snapshot_encrypted else ""
        return BuildArtifact(
            strategy=BuildStrategy.docker_build if deployment.image_ref else BuildStrategy.compose_only,
            compose_text=deployment.compose_snapshot,
            env_text=env_text,
            commit_sha=deployment.commit_sha,
            image_ref=deployment.image_ref,
        )

    def redeploy(self, deployment: Deployment, *, deadline: Deadline, log: LogFn) -> BuildArtifact:
        """Put a previous deployment's artifact back in place."""
        artifact = self.artifact_of(deployment)
        if artifact.image_ref and not artifact.image_ref.endswith(":latest"):
            latest = f"{artifact.image_ref.rsplit(':', 1)[0]}:latest"
            result = run_command(
                [settings.docker_binary, "tag", artifact.image_ref, latest],
                timeout=min(60.0, deadline.remaining()),
                on_output=log,
                phase="deploy",
            )
            if not result.ok:
                raise DeployError(f"Could not retag {artifact.image_ref}: {result.tail(300)}")
        self.deploy(artifact, deployment.stack_id, deadline=deadline, log=log)
        return artifact
