"""Database and cron-log helpers shared by the worker tasks."""

import logging
import time
from typing import Any, Optional

logger = logging.getLogger(__name__)


def get_db_session() -> Any:
    """Open a database session for one task execution."""
    from reviewpulse_core.infra.db import get_sync_session_factory

    return get_sync_session_factory()()


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)


def record_cron_execution(
    job_name: str,
    started: float,
    status: str,
    result: Optional[dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
    """Write a CronExecutionLog row in its own session.

    Best effort: a failure here is logged and never affects the task.
    """
    db = None
    try:
        from reviewpulse_core.observability.sink import PipelineEventSink

        db = get_db_session()
        PipelineEventSink(db).cron_execution(
            job_name=job_name,
            status=status,
            execution_time_ms=elapsed_ms(started),
            result=result,
            error_message=error_message,
        )
        db.commit()
    except Exception as e:
        logger.warning(f"Failed to record cron execution for {job_name}: {e}")
    finally:
        if db:
            db.close()
