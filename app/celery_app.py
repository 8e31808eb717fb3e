from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from app.config import settings
from app.logging import configure_logging

celery_app = Celery("stackpipe")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
celery_app.conf.beat_schedule = {
    "mark-stuck-builds": {
        "task": "app.tasks.maintenance.mark_stuck_builds",
        "schedule": 600.0,
    },
    "prune-webhook-events": {
        "task": "app.tasks.maintenance.prune_webhook_events",
        "schedule": crontab(hour=3, minute=17),
    },
}
celery_app.autodiscover_tasks(["app.tasks"], related_name="maintenance")


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
