"""Analysis tasks: batch scheduling, dispatch and recovery.

Provides background processing for:
1. Scheduling a report's review batches once scraping is over
2. Pulling eligible batches and running theme extraction on them
3. Recovering tasks and reports abandoned by crashed workers
"""

import asyncio
import logging
import time
from typing import Any, Optional

from reviewpulse_worker.celery_app import app
from reviewpulse_worker.util.runtime import get_db_session, record_cron_execution

logger = logging.getLogger(__name__)


def _build_scheduler(db: Any) -> Any:
    from reviewpulse_core.config import get_settings
    from reviewpulse_core.domain.services.batch_scheduler import BatchScheduler, SchedulerConfig

    return BatchScheduler(db, SchedulerConfig.from_settings(get_settings()))


def _record_queue_depths(scheduler: Any) -> dict[str, int]:
    """Sample broker queue depths into the metrics sink."""
    import redis

    from reviewpulse_core.config import get_settings
    from reviewpulse_core.observability.metrics import QueueMetrics

    try:
        depths = QueueMetrics(get_settings().celery_broker_url).collect_queue_depths()
    except redis.RedisError as e:
        logger.warning(f"Could not read queue depths: {e}")
        return {}

    for queue, depth in depths.items():
        scheduler.sink.collector.set_gauge("queue_depth", depth, labels={"queue": queue})
        scheduler.sink.metric("queue_depth", depth, "count", {"queue": queue})
    return depths


async def _dispatch(db: Any, scheduler: Any, limit: int, report_id: Optional[int]) -> Any:
    """Run one dispatch round with a fresh inference client."""
    from reviewpulse_core.config import get_settings
    from reviewpulse_core.domain.services.batch_worker import BatchWorker, WorkerConfig
    from reviewpulse_core.domain.services.inference import get_inference_client
    from reviewpulse_core.domain.services.theme_extraction import ExtractionConfig, ThemeExtractor

    settings = get_settings()
    client = get_inference_client()
    try:
        extractor = ThemeExtractor(
            client,
            ExtractionConfig(
                max_reviews=settings.extraction_max_reviews,
                review_max_chars=settings.extraction_review_max_chars,
            ),
        )
        worker = BatchWorker(
            db,
            extractor,
            scheduler,
            WorkerConfig(
                extraction_timeout_seconds=settings.extraction_timeout_seconds,
                max_reviews_per_call=settings.extraction_max_reviews,
            ),
        )
        return await scheduler.dispatch(
            worker,
            limit=limit,
            max_concurrency=settings.max_concurrent_batches,
            report_id=report_id,
        )
    finally:
        await client.close()


@app.task(
    bind=True,
    name="analysis.start",
    max_retries=3,
    default_retry_delay=30,
)
def start_analysis(self, report_id: int) -> dict:
    """Split a report's reviews into batches and queue them.

    Only the worker that moves the report to ``analyzing`` creates
    tasks; other calls return ``skipped``.

    Args:
        report_id: ID of the report.

    Returns:
        dict: Scheduling result.
    """
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.domain.errors import ReportNotFoundError

        scheduler = _build_scheduler(db)
        try:
            result = scheduler.schedule_report(report_id)
        except ReportNotFoundError as e:
            logger.warning(str(e))
            return {"status": "not_found", "report_id": report_id}
        db.commit()

        if result.status == "scheduled":
            process_batches.delay(report_id=report_id)

        return result.to_dict()

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Failed to schedule analysis for report {report_id}: {exc}", exc_info=True)

        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc)
        return {"status": "failed", "report_id": report_id, "error": str(exc)}

    finally:
        if db:
            db.close()


@app.task(bind=True, name="analysis.process_batches")
def process_batches(self, report_id: Optional[int] = None, limit: Optional[int] = None) -> dict:
    """Claim eligible analysis tasks and extract their themes.

    Runs periodically and after scheduling. Reports whose batches are
    all settled are queued for completion.

    Args:
        report_id: Only claim tasks of this report.
        limit: Maximum number of tasks to claim.

    Returns:
        dict: Dispatch summary.
    """
    started = time.monotonic()
    db = None

    try:
        db = get_db_session()

        from reviewpulse_core.config import get_settings

        settings = get_settings()
        scheduler = _build_scheduler(db)
        result = asyncio.run(
            _dispatch(db, scheduler, limit or settings.max_concurrent_batches, report_id)
        )
        db.commit()

        from reviewpulse_worker.tasks.reports import complete_report

        for ready_id in result.ready_report_ids:
            complete_report.delay(report_id=ready_id)

        if result.claimed:
            logger.info(
                f"Dispatched {result.claimed} batches: {result.succeeded} succeeded, "
                f"{result.failed} failed"
            )
            record_cron_execution("analysis.process_batches", started, "success", result.to_dict())
        return {"status": "success", **result.to_dict()}

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Batch dispatch failed: {exc}", exc_info=True)
        record_cron_execution("analysis.process_batches", started, "failed", error_message=str(exc))
        return {"status": "failed", "error": str(exc)}

    finally:
        if db:
            db.close()


@app.task(bind=True, name="analysis.recover_stale")
def recover_stale(self) -> dict:
    """Repair analysis work left behind by crashed or hung workers.

    Stale tasks go back through the retry queue, unscheduled reports
    are scheduled, and settled or stuck reports are queued for
    completion. Broker queue depths are sampled into the metrics
    sink.

    Returns:
        dict: Recovery summary.
    """
    started = time.monotonic()
    db = None

    try:
        db = get_db_session()

        scheduler = _build_scheduler(db)
        result = scheduler.recover_stale_tasks()
        depths = _record_queue_depths(scheduler)
        db.commit()

        from reviewpulse_worker.tasks.reports import complete_report

        for report_id in result.unscheduled_report_ids:
            start_analysis.delay(report_id=report_id)
        for report_id in result.ready_report_ids:
            complete_report.delay(report_id=report_id)
        for report_id in result.stuck_completion_report_ids:
            complete_report.delay(report_id=report_id, reclaim=True)

        summary = {**result.to_dict(), "queue_depths": depths}
        record_cron_execution("analysis.recover_stale", started, "success", summary)
        return {"status": "success", **summary}

    except Exception as exc:
        if db:
            db.rollback()
        logger.error(f"Stale task recovery failed: {exc}", exc_info=True)
        record_cron_execution("analysis.recover_stale", started, "failed", error_message=str(exc))
        return {"status": "failed", "error": str(exc)}

    finally:
        if db:
            db.close()
