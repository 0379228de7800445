"""Fire-and-forget metric and alert sink.

Writes SystemMetric, AlertLog and CronExecutionLog rows inside a
SAVEPOINT so a failed write never poisons the caller's transaction.
Every failure is logged and swallowed.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.models import (
    AlertLog,
    AlertSeverity,
    CronExecutionLog,
    SystemMetric,
)
from reviewpulse_core.observability.metrics import MetricsCollector, get_collector

logger = logging.getLogger(__name__)


class PipelineEventSink:
    """Persist pipeline metrics and alerts without ever raising."""

    def __init__(self, db: DBSession, collector: Optional[MetricsCollector] = None):
        self.db = db
        self.collector = collector or get_collector()

    def _persist(self, row: Any) -> bool:
        try:
            with self.db.begin_nested():
                self.db.add(row)
            return True
        except Exception as e:
            logger.warning(f"Failed to persist {type(row).__name__}: {e}")
            return False

    def metric(
        self,
        name: str,
        value: float,
        unit: Optional[str] = None,
        tags: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Record a metric sample.

        Returns:
            True if the row was written, False if the write was dropped.
        """
        labels = {k: str(v) for k, v in (tags or {}).items()}
        self.collector.record_histogram(name, float(value), labels=labels)
        return self._persist(
            SystemMetric(
                metric_name=name,
                metric_value=float(value),
                metric_unit=unit,
                tags=tags or {},
            )
        )

    def alert(
        self,
        alert_type: str,
        severity: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Raise an operational alert."""
        self.collector.increment("alerts_raised", labels={"type": alert_type, "severity": severity})
        log_level = logging.ERROR if severity in (AlertSeverity.ERROR, AlertSeverity.CRITICAL) else logging.WARNING
        logger.log(log_level, f"ALERT [{severity}] {alert_type}: {message}")
        return self._persist(
            AlertLog(
                alert_type=alert_type,
                severity=severity,
                message=message,
                details=details or {},
            )
        )

    def cron_execution(
        self,
        job_name: str,
        status: str,
        execution_time_ms: int,
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record one run of a periodic task."""
        return self._persist(
            CronExecutionLog(
                job_name=job_name,
                status=status,
                execution_time_ms=execution_time_ms,
                result=result,
                error_message=error_message,
            )
        )
