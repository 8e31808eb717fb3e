"""
Build Queue — single worker executing build requests one at a time.

Requests are persisted first and then handed to the in-memory FIFO. The
worker also polls the store for ``requested`` rows so that builds recorded by
other processes (Celery beat, a second API replica) are picked up. On start,
waiting requests are resumed in creation order and requests left ``running``
by a previous process are failed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.build_request import BuildRequest, BuildRequestStatus
from app.models.deployment import Deployment, DeploymentStatus
from app.services import build_events as events_mod
from app.services.build_events import BuildEventBus, build_events

logger = logging.getLogger(__name__)

BuildRunner = Callable[[Session, BuildRequest, Callable[[], bool]], Deployment | None]

CANCELLED_QUEUED = "cancelled"
CANCELLING = "cancelling"
ALREADY_FINISHED = "finished"


def run_pipeline(db: Session, request: BuildRequest, cancel_check: Callable[[], bool]) -> Deployment:
    from app.services.deploy_service import DeployService

    return DeployService(db).run_build(request, cancel_check)


def _default_session_factory():
    from app.db import SessionLocal

    return SessionLocal()


class BuildQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        runner: BuildRunner | None = None,
        events: BuildEventBus | None = None,
        poll_interval: float | None = None,
    ):
        self.session_factory = session_factory or _default_session_factory
        self.runner = runner or run_pipeline
        self.events = events or build_events
        self.poll_interval = poll_interval if poll_interval is not None else settings.build_queue_poll_seconds
        self._pending: deque[str] = deque()
        self._cancelled: set[str] = set()
        self._current: str | None = None
        self._cond = threading.Condition()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_poll = 0.0

    # ------------------------------------------------------------- lifecycle

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self.resume_pending()
        self._thread = threading.Thread(target=self._worker, name="build-queue", daemon=True)
        self._thread.start()
        logger.info("Build queue started (%d pending)", len(self._pending))

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Build queue worker still running %s after shutdown request", self._current)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def current_build(self) -> str | None:
        return self._current

    def pending_builds(self) -> list[str]:
        with self._cond:
            return list(self._pending)

    def resume_pending(self) -> int:
        """Re-enqueue waiting requests and fail those a dead worker left running."""
        from app.services.deploy_service import DeployService

        with self.session_factory() as db:
            running = db.scalars(
                select(BuildRequest).where(BuildRequest.status == BuildRequestStatus.running)
            ).all()
            if running:
                svc = DeployService(db)
                for request in running:
                    logger.warning("Build %s was interrupted by a restart", request.build_id)
                    svc.fail_interrupted(request, "Build interrupted: worker restarted")
                db.commit()

            waiting = db.scalars(
                select(BuildRequest)
                .where(BuildRequest.status == BuildRequestStatus.queued)
                .order_by(BuildRequest.created_at)
            ).all()
            with self._cond:
                for request in waiting:
                    if request.build_id not in self._pending:
                        self._pending.append(request.build_id)
                self._cond.notify_all()
        return len(waiting) + self.poll_store()

    # ------------------------------------------------------------- producers

    def enqueue(self, db: Session, request: BuildRequest) -> BuildRequest:
        request.status = BuildRequestStatus.queued
        request.queued_at = datetime.now(UTC)
        db.commit()
        with self._cond:
            self._pending.append(request.build_id)
            position = len(self._pending)
            self._cond.notify_all()
        self.events.publish(
            events_mod.BUILD_QUEUED,
            repo_id=request.repo_id,
            build_id=request.build_id,
            position=position,
            commit_sha=request.commit_sha,
        )
        return request

    def poll_store(self) -> int:
        """Claim ``requested`` rows written by other processes, oldest first."""
        self._last_poll = time.monotonic()
        claimed = 0
        with self.session_factory() as db:
            candidates = db.scalars(
                select(BuildRequest)
                .where(BuildRequest.status == BuildRequestStatus.requested)
                .order_by(BuildRequest.created_at)
            ).all()
            for request in candidates:
                result = db.execute(
                    update(BuildRequest)
                    .where(
                        BuildRequest.request_id == request.request_id,
                        BuildRequest.status == BuildRequestStatus.requested,
                    )
                    .values(status=BuildRequestStatus.queued, queued_at=datetime.now(UTC))
                )
                db.commit()
                if result.rowcount != 1:
                    continue
                with self._cond:
                    self._pending.append(request.build_id)
                    self._cond.notify_all()
                claimed += 1
                self.events.publish(events_mod.BUILD_QUEUED, repo_id=request.repo_id, build_id=request.build_id)
        return claimed

    # ---------------------------------------------------------- cancellation

    def cancel(self, build_id: str) -> str | None:
        """Cancel a build. Returns None when the build id is unknown."""
        with self._cond:
            if build_id in self._pending:
                self._pending.remove(build_id)
                dequeued = True
            else:
                dequeued = False
                if self._current == build_id:
                    self._cancelled.add(build_id)

        with self.session_factory() as db:
            request = db.scalar(select(BuildRequest).where(BuildRequest.build_id == build_id))
            if request is None:
                return None
            if dequeued or request.status in (BuildRequestStatus.requested, BuildRequestStatus.queued):
                from app.services.deploy_service import DeployService

                DeployService(db).cancel_waiting(request)
                db.commit()
                self.events.publish(events_mod.BUILD_CANCELLED, repo_id=request.repo_id, build_id=build_id)
                return CANCELLED_QUEUED
            if request.status == BuildRequestStatus.running:
                request.cancel_requested = True
                db.commit()
                logger.info("Cancellation requested for running build %s", build_id)
                return CANCELLING
            return ALREADY_FINISHED

    def is_cancelled(self, build_id: str) -> bool:
        if build_id in self._cancelled:
            return True
        with self.session_factory() as db:
            flag = db.scalar(select(BuildRequest.cancel_requested).where(BuildRequest.build_id == build_id))
        if flag:
            self._cancelled.add(build_id)
        return bool(flag)

    # ---------------------------------------------------------------- worker

    def process_next(self) -> bool:
        """Run the oldest pending build to completion. False when nothing was pending."""
        with self._cond:
            if not self._pending:
                return False
            build_id = self._pending.popleft()
            self._current = build_id
        try:
            self._execute(build_id)
        finally:
            with self._cond:
                self._current = None
                self._cancelled.discard(build_id)
                self._cond.notify_all()
        return True

    def _execute(self, build_id: str) -> None:
        with self.session_factory() as db:
            request = db.scalar(select(BuildRequest).where(BuildRequest.build_id == build_id))
            if request is None or request.status not in (BuildRequestStatus.queued, BuildRequestStatus.requested):
                logger.info("Skipping build %s: no longer waiting", build_id)
                return
            request.status = BuildRequestStatus.running
            request.started_at = datetime.now(UTC)
            db.commit()
            logger.info("Build %s started for stack %s", build_id, request.stack_id)

            try:
                deployment = self.runner(db, request, lambda: self.is_cancelled(build_id))
            except Exception as exc:
                logger.exception("Build %s crashed", build_id)
                db.rollback()
                self._mark_failed(build_id, f"{type(exc).__name__}: {exc}")
                return

            request.finished_at = datetime.now(UTC)
            if deployment is not None:
                request.deployment_id = deployment.deployment_id
                if deployment.status == DeploymentStatus.successful:
                    request.status = BuildRequestStatus.completed
                    request.error = None
                else:
                    request.status = BuildRequestStatus.failed
                    request.error = deployment.error or deployment.status.value
            else:
                request.status = BuildRequestStatus.failed
                request.error = request.error or "Build produced no deployment"
            db.commit()
            logger.info("Build %s finished: %s", build_id, request.status.value)

    def _mark_failed(self, build_id: str, reason: str) -> None:
        with self.session_factory() as db:
            request = db.scalar(select(BuildRequest).where(BuildRequest.build_id == build_id))
            if request is None:
                return
            request.status = BuildRequestStatus.failed
            request.error = reason
            request.finished_at = datetime.now(UTC)
            db.commit()
            self.events.publish(events_mod.BUILD_FAILED, repo_id=request.repo_id, build_id=build_id, error=reason)

    def _worker(self) -> None:
        while not self._stopping.is_set():
            try:
                if self.process_next():
                    continue
                if time.monotonic() - self._last_poll >= self.poll_interval and self.poll_store():
                    continue
            except Exception:
                logger.exception("Build queue worker iteration failed")
            with self._cond:
                if not self._pending and not self._stopping.is_set():
                    self._cond.wait(timeout=self.poll_interval)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and self._current is None, timeout=timeout)
