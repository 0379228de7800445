"""Maintenance tasks for data retention."""

import logging
import time

from reviewpulse_worker.celery_app import app
from reviewpulse_worker.util.runtime import get_db_session, record_cron_execution

logger = logging.getLogger(__name__)


@app.task(bind=True, name="maintenance.cleanup")
def cleanup(self) -> dict:
    """Delete expired failed tasks and monitoring rows.

    Retention windows come from settings: failed analysis tasks after
    48 hours, metrics, alerts and cron logs after 7 days.

    Returns:
        dict: Rows deleted per table.
    """
    started = time.monotonic()
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.config import get_settings
        from reviewpulse_core.domain.services.batch_scheduler import BatchScheduler, SchedulerConfig

        scheduler = BatchScheduler(db, SchedulerConfig.from_settings(get_settings()))
        deleted = scheduler.cleanup()
        db.commit()

        record_cron_execution("maintenance.cleanup", started, "success", deleted)
        return {"status": "success", "deleted": deleted}

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Cleanup failed: {exc}", exc_info=True)
        record_cron_execution("maintenance.cleanup", started, "failed", error_message=str(exc))
        return {"status": "failed", "error": str(exc)}

    finally:
        if db:
            db.close()
