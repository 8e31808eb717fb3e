import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from app.api.builds import router as builds_router
from app.api.deployments import router as deployments_router
from app.api.deps import require_user_auth
from app.api.git_repos import router as git_repos_router
from app.api.webhooks import router as webhooks_router
from app.config import settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import BUILD_QUEUE_DEPTH, REQUEST_COUNT, REQUEST_LATENCY

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    queue = None
    if settings.build_queue_enabled and not settings.testing:
        from app.services.build_queue import BuildQueue

        queue = BuildQueue()
        queue.start()
    app.state.build_queue = queue
    try:
        yield
    finally:
        if queue is not None:
            queue.stop()


app = FastAPI(title="Stackpipe API", lifespan=lifespan)

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = time.monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    labels = {"method": request.method, "path": path, "status": str(response.status_code)}
    REQUEST_COUNT.labels(**labels).inc()
    REQUEST_LATENCY.labels(**labels).observe(time.monotonic() - started)
    return response


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(webhooks_router)
_include_api_router(git_repos_router, dependencies=[Depends(require_user_auth)])
_include_api_router(builds_router, dependencies=[Depends(require_user_auth)])
_include_api_router(deployments_router, dependencies=[Depends(require_user_auth)])


@app.get("/health")
def health_check(request: Request):
    checks = {"db": False, "redis": None, "build_queue": None}

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["db"] = True
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)

    if settings.redis_url:
        import redis as redis_lib

        try:
            redis_lib.from_url(settings.redis_url, socket_timeout=2).ping()
            checks["redis"] = True
        except redis_lib.RedisError:
            checks["redis"] = False

    queue = getattr(request.app.state, "build_queue", None)
    if queue is not None:
        checks["build_queue"] = queue.running

    all_ok = all(value is not False for value in checks.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "checks": checks,
    }


@app.get("/metrics", dependencies=[Depends(require_user_auth)])
def metrics(request: Request):
    queue = getattr(request.app.state, "build_queue", None)
    if queue is not None:
        BUILD_QUEUE_DEPTH.set(len(queue.pending_builds()))
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
