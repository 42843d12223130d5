"""BATCHWORKS Celery worker configuration."""
from celery import Celery
from celery.signals import setup_logging

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "batchworks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
    include=["app.tasks.health_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_max_retries=3,
    task_routes={
        "app.tasks.*": {"queue": "default"},
    },
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "refresh-production-health-60s": {
        "task": "app.tasks.health_tasks.refresh_production_health_cache",
        "schedule": 60.0,  # every 60 seconds
    },
}


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    from app.core.logging import configure_logging

    configure_logging()
