"""Celery application configuration for the ReviewPulse worker."""

import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

# Celery configuration from environment
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")

app = Celery(
    "reviewpulse_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "reviewpulse_worker.tasks.scraping",
        "reviewpulse_worker.tasks.analysis",
        "reviewpulse_worker.tasks.reports",
        "reviewpulse_worker.tasks.maintenance",
    ],
)

app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds); a dispatch round may run several 180s extractions
    task_soft_time_limit=600,
    task_time_limit=900,
    # Queue routing
    task_routes={
        "scraping.*": {"queue": "scraping"},
        "analysis.*": {"queue": "analysis"},
        "reports.*": {"queue": "reports"},
        "maintenance.*": {"queue": "maintenance"},
    },
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "scraping-monitor-periodic": {
        "task": "scraping.monitor",
        "schedule": 60.0,
        "args": (),
    },
    "analysis-dispatch-periodic": {
        "task": "analysis.process_batches",
        "schedule": 30.0,
        "args": (),
    },
    "analysis-recovery-periodic": {
        "task": "analysis.recover_stale",
        "schedule": 300.0,
        "args": (),
    },
    # Daily retention cleanup at 3 AM UTC
    "daily-cleanup": {
        "task": "maintenance.cleanup",
        "schedule": crontab(hour=3, minute=0),
        "args": (),
    },
}


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Replace Celery's logging setup with the structured JSON logger."""
    from reviewpulse_core.config import get_settings
    from reviewpulse_core.observability import configure_logging

    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        service_name="reviewpulse-worker",
    )


if __name__ == "__main__":
    app.start()
