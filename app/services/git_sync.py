"""Git Sync — working-copy management for stack repositories.

One working copy per stack under ``<data_dir>/repos/<stack_id>``. Clones are
shallow and single-branch; pulls are fast-forward only, so a diverged remote
surfaces as a :class:`SyncError` instead of being papered over with a reset.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from app.config import settings
from app.models.git_repository import GitRepository
from app.services.common import redact_url, resolve_inside, safe_slug, validate_git_ref
from app.services.git_auth import GitAuth
from app.services.pipeline_errors import SyncError
from app.services.process_runner import CommandResult, run_command

logger = logging.getLogger(__name__)

_FIELD_SEP = "\x1f"
_LOG_FORMAT = f"--pretty=format:%H{_FIELD_SEP}%an{_FIELD_SEP}%aI{_FIELD_SEP}%s"


@dataclass(frozen=True)
class Commit:
    sha: str
    author: str
    date: str
    message: str
    branch: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {
            "sha": self.sha,
            "author": self.author,
            "date": self.date,
            "message": self.message,
            "branch": self.branch,
        }


def _parse_log_line(line: str, branch: str | None = None) -> Commit | None:
    parts = line.split(_FIELD_SEP)
    if len(parts) != 4:
        return None
    sha, author, date, message = parts
    return Commit(sha=sha, author=author, date=date, message=message, branch=branch)


class GitSyncService:
    def __init__(
        self,
        data_dir: str | os.PathLike | None = None,
        auth: GitAuth | None = None,
        timeout: float | None = None,
    ):
        root = Path(data_dir or settings.data_dir)
        self.repos_dir = root / "repos"
        self.auth = auth or GitAuth(root)
        self.timeout = timeout or settings.git_timeout_seconds

    def working_copy(self, repo: GitRepository) -> Path:
        return self.repos_dir / safe_slug(repo.stack_id)

    def has_working_copy(self, repo: GitRepository) -> bool:
        return (self.working_copy(repo) / ".git").is_dir()

    def _git(
        self,
        repo: GitRepository,
        args: list[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
        display: str | None = None,
    ) -> CommandResult:
        with self.auth.environment(repo) as env:
            return run_command(
                [settings.git_binary, *args],
                cwd=cwd if cwd is not None else self.working_copy(repo),
                env=env,
                timeout=timeout or self.timeout,
                on_output=on_output,
                phase="sync",
                display=display,
            )

    def _local(self, repo: GitRepository, args: list[str]) -> CommandResult:
        """Read-only git calls against the working copy; no credentials needed."""
        return run_command(
            [settings.git_binary, *args],
            cwd=self.working_copy(repo),
            env={"GIT_TERMINAL_PROMPT": "0"},
            timeout=self.timeout,
            phase="sync",
        )

    def clone(self, repo: GitRepository, *, timeout: float | None = None, on_output=None) -> None:
        branch = validate_git_ref(repo.branch or "main")
        target = self.working_copy(repo)
        if target.exists():
            # Leftover from an interrupted clone
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        result = self._git(
            repo,
            ["clone", "--depth", "1", "--single-branch", "--branch", branch, "--", repo.url, str(target)],
            cwd=target.parent,
            timeout=timeout,
            on_output=on_output,
            display=f"git clone --depth 1 --branch {branch} {redact_url(repo.url)}",
        )
        if not result.ok:
            shutil.rmtree(target, ignore_errors=True)
            raise SyncError(f"git clone failed: {result.tail(500)}")
        logger.info("Cloned %s (%s) for stack %s", redact_url(repo.url), branch, repo.stack_id)

    def pull(self, repo: GitRepository, *, timeout: float | None = None, on_output=None) -> None:
        branch = validate_git_ref(repo.branch or "main")
        if not self.has_working_copy(repo):
            raise SyncError("No working copy to pull into")
        result = self._git(
            repo,
            ["pull", "--ff-only", "origin", branch],
            timeout=timeout,
            on_output=on_output,
            display=f"git pull --ff-only origin {branch}",
        )
        if not result.ok:
            raise SyncError(f"git pull --ff-only failed (diverged or unreachable remote): {result.tail(500)}")

    def checkout(self, repo: GitRepository, branch: str, *, timeout: float | None = None, on_output=None) -> None:
        branch = validate_git_ref(branch)
        if self.current_branch(repo) == branch:
            return
        result = self._local(repo, ["checkout", branch])
        if result.ok:
            return
        # Single-branch clones only know the tracked branch; fetch the other one
        fetched = self._git(
            repo,
            ["fetch", "--depth", "1", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}"],
            timeout=timeout,
            on_output=on_output,
            display=f"git fetch origin {branch}",
        )
        if not fetched.ok:
            raise SyncError(f"git fetch of branch {branch} failed: {fetched.tail(500)}")
        result = self._local(repo, ["checkout", "-b", branch, "--track", f"origin/{branch}"])
        if not result.ok:
            raise SyncError(f"git checkout {branch} failed: {result.tail(500)}")

    def checkout_tag(self, repo: GitRepository, tag: str, *, timeout: float | None = None, on_output=None) -> None:
        tag = validate_git_ref(tag, "tag")
        fetched = self._git(
            repo,
            ["fetch", "--depth", "1", "origin", f"+refs/tags/{tag}:refs/tags/{tag}"],
            timeout=timeout,
            on_output=on_output,
            display=f"git fetch origin tag {tag}",
        )
        if not fetched.ok:
            raise SyncError(f"git fetch of tag {tag} failed: {fetched.tail(500)}")
        result = self._local(repo, ["checkout", "--detach", f"refs/tags/{tag}"])
        if not result.ok:
            raise SyncError(f"git checkout of tag {tag} failed: {result.tail(500)}")

    def sync(
        self,
        repo: GitRepository,
        *,
        tag: str | None = None,
        timeout: float | None = None,
        on_output=None,
    ) -> Commit:
        """Bring the working copy to the tracked branch head (or ``tag``)."""
        if self.has_working_copy(repo):
            self.checkout(repo, repo.branch or "main", timeout=timeout, on_output=on_output)
            self.pull(repo, timeout=timeout, on_output=on_output)
        else:
            self.clone(repo, timeout=timeout, on_output=on_output)
        if tag:
            self.checkout_tag(repo, tag, timeout=timeout, on_output=on_output)
        return self.current_commit(repo)

    def current_branch(self, repo: GitRepository) -> str | None:
        result = self._local(repo, ["rev-parse", "--abbrev-ref", "HEAD"])
        if not result.ok:
            return None
        name = result.output.strip()
        return None if name == "HEAD" else name

    def current_commit(self, repo: GitRepository) -> Commit:
        result = self._local(repo, ["log", "-1", _LOG_FORMAT])
        commit = _parse_log_line(result.output.strip(), self.current_branch(repo)) if result.ok else None
        if commit is None:
            raise SyncError(f"Could not read HEAD commit: {result.tail(300)}")
        return commit

    def history(self, repo: GitRepository, limit: int = 10) -> list[Commit]:
        if not self.has_working_copy(repo):
            return []
        result = self._local(repo, ["log", "-n", str(max(1, int(limit))), _LOG_FORMAT])
        if not result.ok:
            raise SyncError(f"git log failed: {result.tail(300)}")
        branch = self.current_branch(repo)
        commits = []
        for line in result.output.splitlines():
            commit = _parse_log_line(line, branch)
            if commit:
                commits.append(commit)
        return commits

    def resolve_path(self, repo: GitRepository, path: str) -> Path:
        return resolve_inside(self.working_copy(repo), path)

    def read_file(self, repo: GitRepository, path: str) -> bytes:
        target = self.resolve_path(repo, path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def list_files(self, repo: GitRepository, directory: str = "") -> list[str]:
        """Entries of ``directory`` relative to the repo root; directories end with ``/``."""
        root = self.working_copy(repo).resolve()
        target = self.resolve_path(repo, directory)
        if not target.is_dir():
            raise NotADirectoryError(directory)
        entries = []
        for child in sorted(target.iterdir(), key=lambda p: p.name):
            if child.name == ".git":
                continue
            rel = child.relative_to(root).as_posix()
            entries.append(f"{rel}/" if child.is_dir() else rel)
        return entries

    def test_connection(self, repo: GitRepository) -> dict[str, object]:
        result = self._git(
            repo,
            ["ls-remote", "--heads", "--", repo.url],
            cwd=self.repos_dir if self.repos_dir.exists() else Path.cwd(),
            timeout=min(self.timeout, 60),
            display=f"git ls-remote --heads {redact_url(repo.url)}",
        )
        if not result.ok:
            return {"ok": False, "error": result.tail(500)}
        branches = [
            line.split("refs/heads/", 1)[1] for line in result.output.splitlines() if "refs/heads/" in line
        ]
        return {"ok": True, "branches": branches}

    def remove_working_copy(self, repo: GitRepository) -> None:
        target = self.working_copy(repo)
        if target.exists():
            shutil.rmtree(target)
