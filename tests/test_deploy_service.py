"""Tests for the deploy pipeline: phases, logs, rollback and cancellation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from app.models.build_config import BuildArg, BuildEnvVar, BuildStrategy
from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.deployment import DeploymentStatus, DeploymentTrigger
from app.services import build_events as events_mod
from app.services.build_events import BuildEventBus
from app.services.build_service import BuildService
from app.services.deploy_service import DeployService, _append_capped
from app.services.process_runner import CommandResult
from app.services.secret_vault import vault
from tests.conftest import FakeGitSync, FakeRuntime, make_repo


@pytest.fixture()
def bus():
    bus = BuildEventBus()
    bus.received = []
    bus.subscribe(bus.received.append)
    return bus


def _request(db, repo, **kwargs) -> BuildRequest:
    kwargs.setdefault("trigger", DeploymentTrigger.manual)
    kwargs.setdefault("triggered_by", "tester")
    request = BuildService(db).create_request(repo, **kwargs)
    db.commit()
    return request


def _run(db, repo, git, runtime, bus, **kwargs):
    svc = DeployService(db, git=git, runtime=runtime, events=bus)
    request = _request(db, repo)
    return svc.run_build(request, **kwargs)


class TestSuccessfulBuild:
    def test_compose_only_stack_is_applied(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, git, runtime, bus)

        assert deployment.status == DeploymentStatus.successful
        assert deployment.commit_sha == "abc123"
        assert deployment.commit_message == "fix"
        assert deployment.branch == "main"
        assert deployment.error is None
        assert deployment.duration_seconds is not None
        assert len(runtime.applied) == 1
        stack_id, compose_text, _ = runtime.applied[0]
        assert stack_id == repo.stack_id
        assert "image: nginx" in compose_text
        assert deployment.compose_snapshot == compose_text
        assert "[sync] synced abc123" in deployment.build_log
        assert f"[deploy] applied {repo.stack_id}" in deployment.deployment_log
        db_session.refresh(repo)
        assert repo.last_synced_commit == "abc123"

    def test_events_are_published_in_order(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        deployment = _run(db_session, repo, FakeGitSync(data_dir), FakeRuntime(), bus)

        names = [m["event"] for m in bus.received]
        assert names[0] == events_mod.BUILD_STARTED
        assert names[-1] == events_mod.BUILD_COMPLETED
        assert events_mod.BUILD_LOG in names
        assert all(m["deployment_id"] == str(deployment.deployment_id) for m in bus.received)

    def test_secret_env_vars_are_sealed_in_snapshot(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        config = repo.build_config
        config.env_vars.append(BuildEnvVar(name="DB_PASSWORD", value=vault.seal("hunter2"), is_secret=True))
        config.env_vars.append(BuildEnvVar(name="MODE", value="prod", is_secret=False))
        db_session.commit()
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, FakeGitSync(data_dir), runtime, bus)

        assert deployment.status == DeploymentStatus.successful
        env_text = runtime.applied[0][2]
        assert "DB_PASSWORD=hunter2" in env_text
        assert "MODE=prod" in env_text
        assert vault.is_sealed(deployment.env_snapshot_encrypted)
        assert "hunter2" not in deployment.env_snapshot_encrypted
        assert "hunter2" not in deployment.build_log + deployment.deployment_log

    def test_commands_run_in_order(self, db_session, data_dir, bus):
        repo = make_repo(
            db_session,
            strategy=BuildStrategy.script,
            pre_build_commands=["echo first > order.txt"],
            post_build_commands=["echo second >> order.txt", "cat order.txt"],
        )
        git = FakeGitSync(data_dir)

        deployment = _run(db_session, repo, git, FakeRuntime(), bus)

        assert deployment.status == DeploymentStatus.successful
        assert (git.working_copy(repo) / "order.txt").read_text() == "first\nsecond\n"
        assert "[post_build] $ cat order.txt" in deployment.build_log

    def test_docker_build_args_stay_off_the_command_line(self, db_session, data_dir, bus, monkeypatch):
        repo = make_repo(db_session, strategy=BuildStrategy.docker_build)
        repo.build_config.build_args.append(BuildArg(name="NPM_TOKEN", value="npm_s3cret"))
        db_session.commit()
        calls = []

        def fake_run(args, **kwargs):
            calls.append((list(args), dict(kwargs.get("env") or {})))
            return CommandResult(exit_code=0, output="built")

        monkeypatch.setattr("app.services.deploy_executor.run_command", fake_run)
        files = {"docker-compose.yml": "services:\n  web:\n    image: app\n", "Dockerfile": "FROM scratch\n"}

        deployment = _run(db_session, repo, FakeGitSync(data_dir, files=files), FakeRuntime(), bus)

        assert deployment.status == DeploymentStatus.successful
        [(args, env)] = [call for call in calls if "build" in call[0]]
        assert "npm_s3cret" not in " ".join(args)
        assert args[args.index("--build-arg") + 1] == "NPM_TOKEN"
        assert env["NPM_TOKEN"] == "npm_s3cret"


class TestFailedBuild:
    def test_missing_compose_file(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, FakeGitSync(data_dir, files={"README.md": "hi"}), runtime, bus)

        assert deployment.status == DeploymentStatus.failed
        assert deployment.error.startswith("build: Compose file not found")
        assert runtime.applied == []
        assert bus.received[-1]["event"] == events_mod.BUILD_FAILED

    def test_failing_pre_build_command_stops_pipeline(self, db_session, data_dir, bus):
        repo = make_repo(db_session, pre_build_commands=["exit 4", "touch never.txt"])
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, git, runtime, bus)

        assert deployment.status == DeploymentStatus.failed
        assert deployment.error == "pre_build: pre_build command #1 exited with 4"
        assert not (git.working_copy(repo) / "never.txt").exists()
        assert runtime.applied == []

    def test_build_timeout_fails_the_phase(self, db_session, data_dir, bus):
        repo = make_repo(db_session, pre_build_commands=["sleep 30"], timeout_seconds=1)

        deployment = _run(db_session, repo, FakeGitSync(data_dir), FakeRuntime(), bus)

        assert deployment.status == DeploymentStatus.failed
        assert deployment.error.startswith("pre_build: ")
        assert "timed out" in deployment.error

    def test_health_check_failure(self, db_session, data_dir, bus):
        repo = make_repo(db_session, health_check_path="http://127.0.0.1:1/health", health_check_timeout=1)

        deployment = _run(db_session, repo, FakeGitSync(data_dir), FakeRuntime(), bus)

        assert deployment.status == DeploymentStatus.failed
        assert deployment.error.startswith("health_check: Health check failed")
        assert "[health_check]" in deployment.deployment_log

    def test_missing_config(self, db_session, data_dir, bus):
        repo = make_repo(db_session, with_config=False)

        deployment = _run(db_session, repo, FakeGitSync(data_dir), FakeRuntime(), bus)

        assert deployment.status == DeploymentStatus.failed
        assert deployment.error == "No build configuration for stack"


class TestRollbackOnFailure:
    def test_failed_deploy_restores_previous(self, db_session, data_dir, bus):
        repo = make_repo(db_session, rollback_on_failure=True)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime(fail_marker="BROKEN")
        good = _run(db_session, repo, git, runtime, bus)
        assert good.status == DeploymentStatus.successful

        git.files["docker-compose.yml"] = "services:\n  web:\n    image: BROKEN\n"
        git.sha = "bad999"
        bad = _run(db_session, repo, git, runtime, bus)

        assert bad.status == DeploymentStatus.rolled_back
        assert bad.previous_deployment_id == good.deployment_id
        assert bad.error.startswith("deploy: ")
        assert len(runtime.applied) == 3
        assert runtime.applied[-1][1] == good.compose_snapshot
        assert "[rollback] Rollback complete" in bad.deployment_log

    def test_failed_rollback_reports_both_errors(self, db_session, data_dir, bus):
        repo = make_repo(db_session, rollback_on_failure=True)
        git = FakeGitSync(data_dir, files={"docker-compose.yml": "services: {} # FLAKY\n"})
        runtime = FakeRuntime()
        good = _run(db_session, repo, git, runtime, bus)
        assert good.status == DeploymentStatus.successful

        runtime.fail_marker = "FLAKY"
        git.sha = "def456"
        bad = _run(db_session, repo, git, runtime, bus)

        assert bad.status == DeploymentStatus.failed
        assert f"rollback to {good.deployment_id} failed" in bad.error
        assert bad.previous_deployment_id is None

    def test_no_rollback_without_previous_success(self, db_session, data_dir, bus):
        repo = make_repo(db_session, rollback_on_failure=True)
        runtime = FakeRuntime(fail_marker="nginx")

        deployment = _run(db_session, repo, FakeGitSync(data_dir), runtime, bus)

        assert deployment.status == DeploymentStatus.failed
        assert len(runtime.applied) == 1

    def test_disabled_rollback(self, db_session, data_dir, bus):
        repo = make_repo(db_session, rollback_on_failure=False)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime(fail_marker="BROKEN")
        _run(db_session, repo, git, runtime, bus)

        git.files["docker-compose.yml"] = "BROKEN"
        deployment = _run(db_session, repo, git, runtime, bus)

        assert deployment.status == DeploymentStatus.failed
        assert len(runtime.applied) == 2


class TestManualRollback:
    def test_redeploys_recorded_artifact_without_building(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime()
        first = _run(db_session, repo, git, runtime, bus)
        git.files["docker-compose.yml"] = "services:\n  web:\n    image: nginx:2\n"
        git.sha = "def456"
        _run(db_session, repo, git, runtime, bus)
        syncs_before = git.syncs

        request = BuildService(db_session).request_rollback(first.deployment_id, triggered_by="op")
        db_session.commit()
        deployment = DeployService(db_session, git=git, runtime=runtime, events=bus).run_build(request)

        assert deployment.status == DeploymentStatus.successful
        assert deployment.previous_deployment_id == first.deployment_id
        assert deployment.commit_sha == "abc123"
        assert deployment.compose_snapshot == first.compose_snapshot
        assert git.syncs == syncs_before
        assert runtime.applied[-1][1] == first.compose_snapshot
        assert deployment.build_log == ""

    def test_only_successful_deployments(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        failed = _run(db_session, repo, FakeGitSync(data_dir, files={"README.md": "hi"}), FakeRuntime(), bus)
        assert failed.status == DeploymentStatus.failed

        with pytest.raises(ValueError):
            BuildService(db_session).request_rollback(failed.deployment_id, triggered_by="op")


class TestCancellation:
    def test_cancel_before_start(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, git, runtime, bus, cancel_check=lambda: True)

        assert deployment.status == DeploymentStatus.cancelled
        assert git.syncs == 0
        assert runtime.applied == []
        assert bus.received[-1]["event"] == events_mod.BUILD_CANCELLED

    def test_cancel_between_phases(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        git = FakeGitSync(data_dir)
        runtime = FakeRuntime()

        deployment = _run(db_session, repo, git, runtime, bus, cancel_check=lambda: git.syncs > 0)

        assert deployment.status == DeploymentStatus.cancelled
        assert deployment.error == "Cancelled before pre_build"
        assert git.syncs == 1
        assert runtime.applied == []


class TestQueries:
    def test_latest_successful_and_listing(self, db_session, data_dir, bus):
        repo = make_repo(db_session)
        git = FakeGitSync(data_dir)
        first = _run(db_session, repo, git, FakeRuntime(), bus)
        git.sha = "def456"
        second = _run(db_session, repo, git, FakeRuntime(), bus)

        svc = DeployService(db_session, git=git, runtime=FakeRuntime(), events=bus)
        assert svc.latest_successful(repo.stack_id).deployment_id == second.deployment_id
        assert svc.latest_successful(repo.stack_id, exclude_id=second.deployment_id).deployment_id == first.deployment_id
        assert len(svc.list_deployments(repo.stack_id)) == 2
        assert len(svc.list_deployments(repo.stack_id, limit=1)) == 1

    def test_find_active_request(self, db_session):
        repo = make_repo(db_session)
        svc = DeployService(db_session)
        request = _request(db_session, repo, commit_sha="feed01")
        assert svc.find_active_request(repo.repo_id, "feed01").build_id == request.build_id
        assert svc.find_active_request(repo.repo_id, "other") is None
        assert svc.find_active_request(repo.repo_id, None) is None

    def test_mark_stuck_builds(self, db_session):
        repo = make_repo(db_session)
        request = _request(db_session, repo)
        request.status = BuildRequestStatus.running
        request.started_at = datetime.now(UTC) - timedelta(hours=5)
        db_session.commit()

        assert DeployService(db_session).mark_stuck_builds(max_age_minutes=60) >= 1
        db_session.commit()
        db_session.refresh(request)
        assert request.status == BuildRequestStatus.failed
        assert "60 minutes" in request.error

    def test_long_build_within_its_timeout_is_not_stuck(self, db_session):
        repo = make_repo(db_session, timeout_seconds=5 * 3600)
        healthy = _request(db_session, repo)
        healthy.status = BuildRequestStatus.running
        healthy.started_at = datetime.now(UTC) - timedelta(hours=4)
        overdue = _request(db_session, repo)
        overdue.status = BuildRequestStatus.running
        overdue.started_at = datetime.now(UTC) - timedelta(hours=6)
        db_session.commit()

        DeployService(db_session).mark_stuck_builds(max_age_minutes=180)
        db_session.commit()
        db_session.refresh(healthy)
        db_session.refresh(overdue)
        assert healthy.status == BuildRequestStatus.running
        assert overdue.status == BuildRequestStatus.failed
        assert "325 minutes" in overdue.error


class TestLogCap:
    def test_keeps_tail(self):
        text = _append_capped("a" * 50, "b" * 50, 60)
        assert text.startswith("[... earlier output truncated ...]\n")
        assert text.endswith("b" * 50)
        assert len(text) == len("[... earlier output truncated ...]\n") + 60

    def test_under_limit_is_untouched(self):
        assert _append_capped(None, "line\n", 100) == "line\n"
