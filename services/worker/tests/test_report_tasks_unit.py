"""Unit tests for the report completion task."""

from unittest.mock import patch

import pytest


def _patch_db(session):
    return patch("reviewpulse_worker.tasks.reports.get_db_session", return_value=session)


class TestCompleteReport:
    """Tests for complete_report task."""

    def test_task_is_registered(self, mock_celery_app):
        """Task should be registered with Celery."""
        from reviewpulse_worker.tasks.reports import complete_report

        assert complete_report.name == "reports.complete"

    def test_completes_when_ready(self, mock_celery_app, mock_db_session):
        """The default path goes through maybe_complete and commits."""
        from reviewpulse_core.domain.services.report_completion import CompletionResult
        from reviewpulse_worker.tasks.reports import complete_report

        with _patch_db(mock_db_session), patch(
            "reviewpulse_core.domain.services.report_completion.ReportCompletionCoordinator"
        ) as coordinator_cls:
            coordinator_cls.return_value.maybe_complete.return_value = CompletionResult(
                report_id=5, status="completed", theme_counts={"reddit": 3}
            )

            result = complete_report(report_id=5)

        assert result["status"] == "completed"
        assert result["success"] is True
        coordinator_cls.return_value.complete_report.assert_not_called()
        mock_db_session.commit.assert_called_once()

    def test_reclaim_takes_over_stuck_completion(self, mock_celery_app, mock_db_session):
        """reclaim=True calls complete_report with reclaim."""
        from reviewpulse_core.domain.services.report_completion import CompletionResult
        from reviewpulse_worker.tasks.reports import complete_report

        with _patch_db(mock_db_session), patch(
            "reviewpulse_core.domain.services.report_completion.ReportCompletionCoordinator"
        ) as coordinator_cls:
            coordinator_cls.return_value.complete_report.return_value = CompletionResult(
                report_id=5, status="completed"
            )

            complete_report(report_id=5, reclaim=True)

        coordinator_cls.return_value.complete_report.assert_called_once_with(5, reclaim=True)

    def test_stale_completion_follows_stuck_report_setting(self, mock_celery_app, mock_db_session):
        """The reclaim window comes from stuck_report_minutes."""
        from datetime import timedelta
        from unittest.mock import MagicMock

        from reviewpulse_core.domain.services.report_completion import CompletionResult
        from reviewpulse_worker.tasks.reports import complete_report

        settings = MagicMock(max_final_themes=40, stuck_report_minutes=30)

        with _patch_db(mock_db_session), patch(
            "reviewpulse_core.config.get_settings", return_value=settings
        ), patch(
            "reviewpulse_core.domain.services.report_completion.ReportCompletionCoordinator"
        ) as coordinator_cls:
            coordinator_cls.return_value.complete_report.return_value = CompletionResult(
                report_id=5, status="completed"
            )

            complete_report(report_id=5, reclaim=True)

        kwargs = coordinator_cls.call_args.kwargs
        assert kwargs["stale_completion"] == timedelta(minutes=30)
        assert kwargs["max_themes"] == 40

    def test_transient_error_is_retried(self, mock_celery_app, mock_db_session):
        """A transient claim race goes through Celery's retry."""
        from reviewpulse_core.domain.errors import TransientCompletionError
        from reviewpulse_worker.tasks.reports import complete_report

        with _patch_db(mock_db_session), patch(
            "reviewpulse_core.domain.services.report_completion.ReportCompletionCoordinator"
        ) as coordinator_cls:
            coordinator_cls.return_value.maybe_complete.side_effect = TransientCompletionError("claim raced")

            with pytest.raises(TransientCompletionError):
                complete_report(report_id=5)

        mock_db_session.rollback.assert_called_once()

    def test_other_errors_are_not_retried(self, mock_celery_app, mock_db_session):
        """Unexpected failures roll back and return failed."""
        from reviewpulse_worker.tasks.reports import complete_report

        with _patch_db(mock_db_session), patch(
            "reviewpulse_core.domain.services.report_completion.ReportCompletionCoordinator"
        ) as coordinator_cls:
            coordinator_cls.return_value.maybe_complete.side_effect = RuntimeError("boom")

            result = complete_report(report_id=5)

        assert result == {"status": "failed", "report_id": 5, "error": "boom"}
        mock_db_session.rollback.assert_called_once()
        mock_db_session.close.assert_called_once()
