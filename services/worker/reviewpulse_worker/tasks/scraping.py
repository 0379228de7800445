"""Scraping lifecycle tasks.

Provides background processing for:
1. Starting the scraping phase of a report (session find-or-create)
2. The periodic completion monitor, which hands finished reports to analysis
"""

import logging
import time

from reviewpulse_worker.celery_app import app
from reviewpulse_worker.util.runtime import get_db_session, record_cron_execution

logger = logging.getLogger(__name__)


@app.task(
    bind=True,
    name="scraping.start",
    max_retries=3,
    default_retry_delay=30,
)
def start_scraping(self, report_id: int) -> dict:
    """Create or reuse the scraping session of a report.

    Safe to run more than once for the same report.

    Args:
        report_id: ID of the report.

    Returns:
        dict: Session id and whether it was created.
    """
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.domain.errors import ReportNotFoundError
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        service = ScrapingSessionService(db)
        try:
            session, created = service.start_scraping(report_id)
        except ReportNotFoundError as e:
            logger.warning(str(e))
            return {"status": "not_found", "report_id": report_id}

        db.commit()
        logger.info(f"Scraping started for report {report_id} (session {session.id}, created={created})")
        return {
            "status": "success",
            "report_id": report_id,
            "session_id": session.id,
            "created": created,
            "enabled_platforms": session.enabled_platforms,
        }

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Failed to start scraping for report {report_id}: {exc}", exc_info=True)

        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        return {"status": "failed", "report_id": report_id, "error": str(exc)}

    finally:
        if db:
            db.close()


@app.task(bind=True, name="scraping.monitor")
def monitor_scraping(self) -> dict:
    """Advance every report whose scraping phase is done or timed out.

    This is the periodic task that runs every minute. Each advanced
    report is queued for analysis.

    Returns:
        dict: Monitor summary with the queued report ids.
    """
    started = time.monotonic()
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.config import get_settings
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingCompletionMonitor

        settings = get_settings()
        monitor = ScrapingCompletionMonitor(db, max_wait_minutes=settings.scraping_max_wait_minutes)
        result = monitor.run()
        db.commit()

        from reviewpulse_worker.tasks.analysis import start_analysis

        queued = []
        for report_id in result.ready_report_ids:
            task = start_analysis.delay(report_id=report_id)
            queued.append({"report_id": report_id, "task_id": task.id})

        summary = {"status": "success", **result.to_dict(), "queued": queued}
        if result.checked:
            logger.info(
                f"Scraping monitor checked {result.checked} reports, "
                f"advanced {len(result.ready_report_ids)}"
            )
        record_cron_execution("scraping.monitor", started, "success", result.to_dict())
        return summary

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Scraping monitor failed: {exc}", exc_info=True)
        record_cron_execution("scraping.monitor", started, "failed", error_message=str(exc))
        return {"status": "failed", "error": str(exc)}

    finally:
        if db:
            db.close()
