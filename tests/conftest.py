import asyncio
import os
import sys
import tempfile
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import ModuleType

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import jwt
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool


class SyncASGIClient:
    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        return None


# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///file:stackpipe_test?mode=memory&cache=shared",
    connect_args={"check_same_thread": False, "uri": True},
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    __test__ = False


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


# Create a mock db module
mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase  # type: ignore[attr-defined]
mock_db_module.SessionLocal = _TestSessionLocal  # type: ignore[attr-defined]
mock_db_module.get_engine = lambda: _test_engine  # type: ignore[attr-defined]

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="stackpipe-test-")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    testing = True
    log_level = "INFO"
    log_json = False
    data_dir = _TEST_DATA_DIR
    git_binary = "git"
    docker_binary = "docker"
    image_prefix = "stackpipe"
    build_queue_enabled = False
    build_queue_poll_seconds = 0.05
    default_build_timeout_seconds = 60
    git_timeout_seconds = 30
    stuck_build_minutes = 180
    build_log_max_chars = 500_000
    health_check_base_url = "http://localhost"
    health_check_default_timeout = 2
    health_check_interval_seconds = 0.05
    webhook_rate_limit = 1000
    webhook_event_retention_days = 30
    redis_url = None
    event_channel_prefix = "stackpipe-test"
    celery_broker_url = "memory://"
    celery_result_backend = "cache+memory://"
    jwt_secret = "test-secret"
    jwt_algorithm = "HS256"


mock_config_module.settings = MockSettings()  # type: ignore[attr-defined]
mock_config_module.Settings = MockSettings  # type: ignore[attr-defined]

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

# Set environment variables
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["SECRET_VAULT_KEY"] = "QLUJktsTSfZEbST4R-37XmQ0tCkiVCBXZN2Zt053w8g="

# Now import the models - they'll use our mocked db module
from app.models.build_config import BuildConfig, BuildStrategy  # noqa: E402
from app.models.build_request import BuildRequestStatus  # noqa: E402
from app.models.deployment import Deployment, DeploymentTrigger  # noqa: E402, F401
from app.models.git_repository import GitAuthType, GitProvider, GitRepository  # noqa: E402
from app.models.webhook_event import WebhookEvent  # noqa: E402, F401
from app.services.git_sync import Commit, GitSyncService  # noqa: E402
from app.services.pipeline_errors import DeployError  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the shared in-memory database so sessions opened by the app see the
    same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def isolated_sessions(tmp_path):
    """Session factory over a private sqlite file, for worker/queue tests."""
    file_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'queue.db'}",
        connect_args={"check_same_thread": False},
    )
    TestBase.metadata.create_all(file_engine)
    factory = sessionmaker(bind=file_engine, autoflush=False, autocommit=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        file_engine.dispose()


def unique_stack() -> str:
    return f"stack-{uuid.uuid4().hex[:10]}"


def make_repo(
    db,
    *,
    provider: GitProvider = GitProvider.generic,
    branch: str = "main",
    webhook_secret: str | None = None,
    strategy: BuildStrategy = BuildStrategy.compose_only,
    with_config: bool = True,
    **config_fields,
) -> GitRepository:
    from app.services.secret_vault import vault

    stack_id = unique_stack()
    repo = GitRepository(
        stack_id=stack_id,
        url=f"https://git.example.com/acme/{stack_id}.git",
        branch=branch,
        auth_type=GitAuthType.none,
        provider=provider,
        webhook_secret_encrypted=vault.seal(webhook_secret) if webhook_secret else None,
    )
    db.add(repo)
    db.flush()
    if with_config:
        fields = {
            "strategy": strategy,
            "pre_build_commands": [],
            "post_build_commands": [],
            "auto_deploy_branches": [],
            "timeout_seconds": 60,
            "rollback_on_failure": False,
        }
        fields.update(config_fields)
        db.add(BuildConfig(stack_id=stack_id, repo_id=repo.repo_id, **fields))
    db.commit()
    db.refresh(repo)
    return repo


@pytest.fixture()
def repo_factory(db_session):
    return lambda **kwargs: make_repo(db_session, **kwargs)


class FakeGitSync(GitSyncService):
    """Working copy populated from an in-memory file map instead of a remote."""

    def __init__(self, data_dir, files: dict[str, str] | None = None, sha: str = "abc123", message: str = "fix"):
        super().__init__(data_dir=data_dir)
        self.files = dict(files or {"docker-compose.yml": "services:\n  web:\n    image: nginx\n"})
        self.sha = sha
        self.message = message
        self.syncs = 0

    def sync(self, repo, *, tag=None, timeout=None, on_output=None):
        work = self.working_copy(repo)
        work.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            target = work / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        self.syncs += 1
        if on_output is not None:
            on_output(f"synced {self.sha}")
        return Commit(sha=self.sha, author="a", date="2026-01-01T00:00:00+00:00", message=self.message, branch=repo.branch)


class FakeRuntime:
    """Records every apply; fails when the compose text contains ``fail_marker``."""

    def __init__(self, fail_marker: str | None = None):
        self.fail_marker = fail_marker
        self.applied: list[tuple[str, str, str]] = []

    def apply(self, stack_id, compose_text, env_text, *, on_output=None, timeout=None):
        self.applied.append((stack_id, compose_text, env_text))
        if self.fail_marker and self.fail_marker in compose_text:
            raise DeployError("docker compose up failed (exit 1): simulated")
        if on_output is not None:
            on_output(f"applied {stack_id}")


class RecordingQueue:
    """Stands in for the in-process build queue in API tests."""

    running = True

    def __init__(self):
        self.enqueued: list[str] = []
        self.cancelled: list[str] = []

    def pending_builds(self) -> list[str]:
        return list(self.enqueued)

    def enqueue(self, db, request):
        request.status = BuildRequestStatus.queued
        request.queued_at = datetime.now(UTC)
        db.flush()
        self.enqueued.append(request.build_id)
        return request

    def cancel(self, build_id):
        self.cancelled.append(build_id)
        return "cancelled"


@pytest.fixture()
def data_dir(tmp_path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def _reset_rate_limiters():
    """Reset rate limiter state between tests."""
    from app.rate_limit import webhook_limiter

    webhook_limiter.reset()


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def build_queue():
    return RecordingQueue()


@pytest.fixture()
def client(db_session, build_queue):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as deps_get_db
    from app.main import app

    def override_get_db():
        return db_session

    app.dependency_overrides[deps_get_db] = override_get_db

    @asynccontextmanager
    async def _test_lifespan(_app):
        yield

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _test_lifespan
    app.state.build_queue = build_queue
    test_client = SyncASGIClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.router.lifespan_context = original_lifespan
        app.state.build_queue = None
        app.dependency_overrides.clear()


def _create_access_token(subject: str, expires_in: timedelta = timedelta(minutes=15)) -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET", "test-secret")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "typ": "access",
        "exp": int((now + expires_in).timestamp()),
        "iat": int(now.timestamp()),
    }
    return str(jwt.encode(payload, secret, algorithm=algorithm))


@pytest.fixture()
def auth_headers():
    """Return authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {_create_access_token('operator-1')}"}
