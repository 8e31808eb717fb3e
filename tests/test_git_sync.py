"""Tests for Git Sync against a local origin repository."""

from __future__ import annotations

import os
import shutil
import subprocess

import pytest

from app.models.git_repository import GitAuthType, GitProvider, GitRepository
from app.services.git_sync import GitSyncService
from app.services.pipeline_errors import PathTraversalError, SyncError

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

_GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Ada",
    "GIT_AUTHOR_EMAIL": "ada@example.com",
    "GIT_COMMITTER_NAME": "Ada",
    "GIT_COMMITTER_EMAIL": "ada@example.com",
}


def _git(cwd, *args) -> str:
    out = subprocess.run(["git", *args], cwd=cwd, env=_GIT_ENV, check=True, capture_output=True, text=True)
    return out.stdout.strip()


def _commit(origin, name: str, content: str, message: str) -> str:
    (origin / name).parent.mkdir(parents=True, exist_ok=True)
    (origin / name).write_text(content)
    _git(origin, "add", "-A")
    _git(origin, "commit", "-q", "-m", message)
    return _git(origin, "rev-parse", "HEAD")


@pytest.fixture()
def origin(tmp_path):
    path = tmp_path / "origin"
    path.mkdir()
    _git(path, "init", "-q", "-b", "main")
    _commit(path, "docker-compose.yml", "services: {}\n", "Initial stack")
    _commit(path, "config/app.env", "A=1\n", "Add env")
    return path


@pytest.fixture()
def repo(origin):
    return GitRepository(
        stack_id="sync-test",
        url=f"file://{origin}",
        branch="main",
        auth_type=GitAuthType.none,
        provider=GitProvider.generic,
    )


@pytest.fixture()
def git(tmp_path):
    return GitSyncService(data_dir=tmp_path / "data", timeout=60)


class TestGitSync:
    def test_first_sync_clones(self, git, repo, origin):
        lines = []
        commit = git.sync(repo, on_output=lines.append)
        assert commit.sha == _git(origin, "rev-parse", "HEAD")
        assert commit.message == "Add env"
        assert commit.branch == "main"
        assert git.has_working_copy(repo)
        assert git.read_file(repo, "docker-compose.yml") == b"services: {}\n"

    def test_second_sync_pulls(self, git, repo, origin):
        git.sync(repo)
        new_sha = _commit(origin, "docker-compose.yml", "services:\n  web: {}\n", "Add web")
        commit = git.sync(repo)
        assert commit.sha == new_sha
        assert b"web" in git.read_file(repo, "docker-compose.yml")

    def test_diverged_remote_is_not_reset(self, git, repo, origin):
        git.sync(repo)
        before = git.current_commit(repo).sha
        (origin / "docker-compose.yml").write_text("services:\n  rewritten: {}\n")
        _git(origin, "commit", "-q", "-a", "--amend", "-m", "Rewritten history")
        assert _git(origin, "rev-parse", "HEAD") != before

        with pytest.raises(SyncError):
            git.sync(repo)

        assert git.current_commit(repo).sha == before
        assert git.read_file(repo, "docker-compose.yml") == b"services: {}\n"

    def test_sync_to_tag(self, git, repo, origin):
        first = _git(origin, "rev-parse", "HEAD")
        _git(origin, "tag", "v1.0.0")
        _commit(origin, "later.txt", "x\n", "Later work")
        commit = git.sync(repo, tag="v1.0.0")
        assert commit.sha == first
        assert commit.branch is None

    def test_history_and_listing(self, git, repo):
        assert git.history(repo) == []
        git.sync(repo)
        history = git.history(repo, limit=5)
        assert [c.message for c in history][:1] == ["Add env"]
        assert git.list_files(repo) == ["config/", "docker-compose.yml"]
        assert git.list_files(repo, "config") == ["config/app.env"]

    def test_paths_stay_inside_working_copy(self, git, repo):
        git.sync(repo)
        with pytest.raises(PathTraversalError):
            git.read_file(repo, "../../etc/passwd")
        with pytest.raises(FileNotFoundError):
            git.read_file(repo, "missing.yml")

    def test_clone_failure(self, git, tmp_path):
        broken = GitRepository(
            stack_id="broken",
            url=f"file://{tmp_path / 'nowhere'}",
            branch="main",
            auth_type=GitAuthType.none,
            provider=GitProvider.generic,
        )
        with pytest.raises(SyncError):
            git.sync(broken)
        assert not git.working_copy(broken).exists()

    def test_test_connection(self, git, repo):
        result = git.test_connection(repo)
        assert result == {"ok": True, "branches": ["main"]}

    def test_remove_working_copy(self, git, repo):
        git.sync(repo)
        git.remove_working_copy(repo)
        assert not git.has_working_copy(repo)
