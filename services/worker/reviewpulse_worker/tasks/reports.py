"""Report completion task."""

import logging
from datetime import timedelta

from reviewpulse_core.domain.errors import TransientCompletionError

from reviewpulse_worker.celery_app import app
from reviewpulse_worker.util.runtime import get_db_session

logger = logging.getLogger(__name__)


@app.task(
    bind=True,
    name="reports.complete",
    max_retries=3,
    default_retry_delay=30,
)
def complete_report(self, report_id: int, reclaim: bool = False) -> dict:
    """Consolidate and save the final themes of a report.

    Concurrent calls for the same report are harmless: only one wins the
    completion claim, the others return ``already_processing`` or
    ``already_completed``.

    Args:
        report_id: ID of the report.
        reclaim: Take over a completion stuck in ``completing``.

    Returns:
        dict: Completion result.
    """
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.config import get_settings
        from reviewpulse_core.domain.services.report_completion import ReportCompletionCoordinator

        settings = get_settings()
        coordinator = ReportCompletionCoordinator(
            db,
            max_themes=settings.max_final_themes,
            stale_completion=timedelta(minutes=settings.stuck_report_minutes),
        )
        if reclaim:
            result = coordinator.complete_report(report_id, reclaim=True)
        else:
            result = coordinator.maybe_complete(report_id)

        db.commit()
        return result.to_dict()

    except TransientCompletionError as exc:
        if db:
            db.rollback()
        logger.warning(f"Completion of report {report_id} will be retried: {exc}")

        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        return {"status": "failed", "report_id": report_id, "error": str(exc)}

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Failed to complete report {report_id}: {exc}", exc_info=True)
        return {"status": "failed", "report_id": report_id, "error": str(exc)}

    finally:
        if db:
            db.close()
