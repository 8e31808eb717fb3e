"""
Maintenance Tasks — housekeeping for the build pipeline, run from Celery beat.

Builds themselves never run inside Celery: ``trigger_scheduled_build`` only
records a ``requested`` build, which the build worker claims on its next poll.
"""

import logging
import time
from datetime import UTC, datetime, timedelta

from celery import shared_task

from app.config import settings
from app.db import SessionLocal
from app.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def mark_stuck_builds(self) -> dict:
    """Fail builds that have been running longer than STUCK_BUILD_MINUTES."""
    started = time.monotonic()
    with SessionLocal() as db:
        from app.services.deploy_service import DeployService

        count = DeployService(db).mark_stuck_builds(settings.stuck_build_minutes)
        db.commit()

    if count:
        logger.warning("Marked %d stuck builds as failed", count)
    observe_job("mark_stuck_builds", "success", time.monotonic() - started)
    return {"failed_builds": count}


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def prune_webhook_events(self) -> dict:
    """Delete processed webhook events past the retention window."""
    cutoff = datetime.now(UTC) - timedelta(days=settings.webhook_event_retention_days)

    with SessionLocal() as db:
        from app.services.webhook_ingest_service import WebhookIngestService

        count = WebhookIngestService(db).prune(cutoff)
        db.commit()

    logger.info("Pruned %d webhook events older than %s", count, cutoff.date())
    return {"deleted_events": count}


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def trigger_scheduled_build(self, stack_id: str) -> dict:
    """Request a build of the tracked branch head for ``stack_id``."""
    from app.models.deployment import DeploymentTrigger
    from app.services.build_service import BuildService

    with SessionLocal() as db:
        try:
            request = BuildService(db).trigger_manual(
                stack_id,
                triggered_by="scheduler",
                trigger=DeploymentTrigger.scheduled,
            )
        except (LookupError, ValueError) as exc:
            db.rollback()
            logger.warning("Scheduled build for %s not requested: %s", stack_id, exc)
            return {"success": False, "error": str(exc)}
        db.commit()
        build_id = request.build_id

    logger.info("Scheduled build %s requested for stack %s", build_id, stack_id)
    return {"success": True, "build_id": build_id}
