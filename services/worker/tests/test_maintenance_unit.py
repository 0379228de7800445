"""Unit tests for maintenance tasks and the shared runtime helpers."""

from unittest.mock import MagicMock, patch


class TestCleanup:
    """Tests for cleanup task."""

    def test_task_is_registered(self, mock_celery_app):
        """Task should be registered with Celery."""
        from reviewpulse_worker.tasks.maintenance import cleanup

        assert cleanup.name == "maintenance.cleanup"

    def test_reports_deleted_rows(self, mock_celery_app, mock_db_session):
        """Deleted row counts are returned and logged as a cron run."""
        from reviewpulse_worker.tasks.maintenance import cleanup

        deleted = {"analysis_tasks": 3, "system_metrics": 10, "alert_logs": 0, "cron_execution_logs": 2}
        with patch("reviewpulse_worker.tasks.maintenance.get_db_session", return_value=mock_db_session), patch(
            "reviewpulse_worker.tasks.maintenance.record_cron_execution"
        ) as record_cron, patch(
            "reviewpulse_core.domain.services.batch_scheduler.BatchScheduler"
        ) as scheduler_cls:
            scheduler_cls.return_value.cleanup.return_value = deleted

            result = cleanup()

        assert result == {"status": "success", "deleted": deleted}
        mock_db_session.commit.assert_called_once()
        assert record_cron.call_args[0][3] == deleted

    def test_failure(self, mock_celery_app, mock_db_session):
        """A failed cleanup rolls back and reports failure."""
        from reviewpulse_worker.tasks.maintenance import cleanup

        with patch("reviewpulse_worker.tasks.maintenance.get_db_session", return_value=mock_db_session), patch(
            "reviewpulse_worker.tasks.maintenance.record_cron_execution"
        ), patch(
            "reviewpulse_core.domain.services.batch_scheduler.BatchScheduler"
        ) as scheduler_cls:
            scheduler_cls.return_value.cleanup.side_effect = RuntimeError("deadlock")

            result = cleanup()

        assert result["status"] == "failed"
        mock_db_session.rollback.assert_called_once()


class TestRecordCronExecution:
    """Tests for record_cron_execution helper."""

    def test_writes_row_and_commits(self):
        """A cron row is written through the event sink in its own session."""
        from reviewpulse_worker.util.runtime import record_cron_execution

        db = MagicMock()
        with patch("reviewpulse_worker.util.runtime.get_db_session", return_value=db), patch(
            "reviewpulse_core.observability.sink.PipelineEventSink"
        ) as sink_cls:
            record_cron_execution("maintenance.cleanup", 0.0, "success", {"deleted": 1})

        kwargs = sink_cls.return_value.cron_execution.call_args.kwargs
        assert kwargs["job_name"] == "maintenance.cleanup"
        assert kwargs["status"] == "success"
        db.commit.assert_called_once()
        db.close.assert_called_once()

    def test_failures_never_escape(self):
        """A broken database does not break the calling task."""
        from reviewpulse_worker.util.runtime import record_cron_execution

        with patch("reviewpulse_worker.util.runtime.get_db_session", side_effect=RuntimeError("no db")):
            record_cron_execution("scraping.monitor", 0.0, "failed", error_message="x")

    def test_elapsed_ms(self):
        """elapsed_ms measures from a monotonic reading."""
        from reviewpulse_worker.util.runtime import elapsed_ms

        with patch("reviewpulse_worker.util.runtime.time.monotonic", return_value=2.5):
            assert elapsed_ms(1.0) == 1500
