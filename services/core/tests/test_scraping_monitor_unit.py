"""Unit tests for the scraping session lifecycle and completion monitor.

Tests cover:
- The completion predicate
- Session find-or-create and scraper status updates
- Monitor runs: natural completion, forced completion on timeout, waiting
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from reviewpulse_core.domain.models import (
    AlertLog,
    ReportStatus,
    ScraperStatus,
    ScrapingSession,
    ScrapingSessionStatus,
    SystemMetric,
    utcnow,
)
from tests.factories import create_report, create_review, create_scraping_session


class TestCompletionPredicate:
    """Tests for is_scraping_complete."""

    def test_completed_failed_disabled_is_complete(self):
        """All enabled scrapers terminal with one success completes scraping."""
        from reviewpulse_core.domain.services.scraping_monitor import is_scraping_complete

        statuses = {"app_store": "completed", "google_play": "failed", "reddit": "disabled"}

        assert is_scraping_complete(statuses) is True

    def test_all_failed_is_not_complete(self):
        """At least one scraper must have completed."""
        from reviewpulse_core.domain.services.scraping_monitor import is_scraping_complete

        statuses = {"app_store": "failed", "google_play": "failed", "reddit": "failed"}

        assert is_scraping_complete(statuses) is False

    def test_running_scraper_blocks_completion(self):
        """A non-terminal enabled scraper keeps the report waiting."""
        from reviewpulse_core.domain.services.scraping_monitor import is_scraping_complete

        statuses = {"app_store": "completed", "google_play": "running", "reddit": "completed"}

        assert is_scraping_complete(statuses) is False

    def test_only_enabled_platforms_count(self):
        """Platforms outside the enabled list are ignored."""
        from reviewpulse_core.domain.services.scraping_monitor import is_scraping_complete

        statuses = {"app_store": "completed", "google_play": "pending", "reddit": "running"}

        assert is_scraping_complete(statuses, ["app_store"]) is True

    def test_all_disabled_is_not_complete(self):
        """A session with no enabled scraper never completes on its own."""
        from reviewpulse_core.domain.services.scraping_monitor import is_scraping_complete

        statuses = {"app_store": "disabled", "google_play": "disabled", "reddit": "disabled"}

        assert is_scraping_complete(statuses) is False


class TestScrapingSessionService:
    """Tests for ScrapingSessionService."""

    def test_start_scraping_creates_session(self, db_session: Session):
        """The first start creates a session and moves the report to scraping."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        report = create_report(db_session, enabled_platforms=["app_store", "reddit"])
        service = ScrapingSessionService(db_session)

        session, created = service.start_scraping(report.id)

        assert created is True
        assert session.app_store_scraper_status == ScraperStatus.PENDING
        assert session.reddit_scraper_status == ScraperStatus.PENDING
        assert session.google_play_scraper_status == ScraperStatus.DISABLED
        assert service.state.get_report(report.id).status == ReportStatus.SCRAPING

    def test_start_scraping_is_reentrant(self, db_session: Session):
        """A second start reuses the active session instead of duplicating it."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        report = create_report(db_session)
        service = ScrapingSessionService(db_session)

        first, _ = service.start_scraping(report.id)
        second, created = service.start_scraping(report.id)

        assert created is False
        assert second.id == first.id
        assert db_session.query(ScrapingSession).filter_by(report_id=report.id).count() == 1

    def test_start_scraping_unknown_report(self, db_session: Session):
        """A missing report raises ReportNotFoundError."""
        from reviewpulse_core.domain.errors import ReportNotFoundError
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        with pytest.raises(ReportNotFoundError):
            ScrapingSessionService(db_session).start_scraping(4242)

    def test_update_platform_status(self, db_session: Session):
        """Scrapers record their status and review count."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        report = create_report(db_session, status=ReportStatus.SCRAPING)
        scraping = create_scraping_session(db_session, report)
        service = ScrapingSessionService(db_session)

        updated = service.update_platform_status(scraping.id, "reddit", ScraperStatus.COMPLETED, 12)

        assert updated.reddit_scraper_status == ScraperStatus.COMPLETED
        assert updated.reddit_posts == 12

    def test_update_platform_status_rejects_unknown_values(self, db_session: Session):
        """Unknown platforms and statuses are rejected."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        report = create_report(db_session, status=ReportStatus.SCRAPING)
        scraping = create_scraping_session(db_session, report)
        service = ScrapingSessionService(db_session)

        with pytest.raises(ValueError):
            service.update_platform_status(scraping.id, "twitter", ScraperStatus.COMPLETED)
        with pytest.raises(ValueError):
            service.update_platform_status(scraping.id, "reddit", "exploded")

    def test_record_reviews_skips_empty_text(self, db_session: Session):
        """Rows without review text are not stored."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingSessionService

        report = create_report(db_session, status=ReportStatus.SCRAPING)
        scraping = create_scraping_session(db_session, report)
        service = ScrapingSessionService(db_session)

        inserted = service.record_reviews(
            scraping.id,
            "reddit",
            [
                {"review_text": "Sync is broken on my tablet", "metadata": {"score": 10}},
                {"review_text": ""},
            ],
        )

        assert inserted == 1


class TestScrapingCompletionMonitor:
    """Tests for ScrapingCompletionMonitor."""

    def test_advances_report_when_predicate_holds(self, db_session: Session, event_sink):
        """completed/failed/disabled statuses move the report forward."""
        from reviewpulse_core.domain.services.scraping_monitor import (
            MonitorOutcome,
            ScrapingCompletionMonitor,
        )

        report = create_report(db_session, status=ReportStatus.SCRAPING)
        scraping = create_scraping_session(
            db_session,
            report,
            statuses={"app_store": "completed", "google_play": "failed", "reddit": "disabled"},
        )
        create_review(db_session, scraping, platform="app_store")
        create_review(db_session, scraping, platform="app_store", review_text="Love the new editor layout")

        monitor = ScrapingCompletionMonitor(db_session, sink=event_sink)
        decision = monitor.check_report(report)

        assert decision.outcome == MonitorOutcome.COMPLETED
        assert decision.stats.app_store == 2
        assert monitor.state.get_report(report.id).status == ReportStatus.SCRAPING_COMPLETED
        db_session.refresh(scraping)
        assert scraping.status == ScrapingSessionStatus.COMPLETED
        assert scraping.total_reviews_found == 2

    def test_forces_completion_after_timeout(self, db_session: Session, event_sink):
        """A report stuck past max wait is force-completed even with a running scraper."""
        from reviewpulse_core.domain.services.scraping_monitor import (
            MonitorOutcome,
            ScrapingCompletionMonitor,
        )

        now = utcnow()
        report = create_report(db_session, status=ReportStatus.SCRAPING)
        scraping = create_scraping_session(
            db_session,
            report,
            statuses={"app_store": "running", "google_play": "disabled", "reddit": "disabled"},
            started_at=now - timedelta(minutes=20),
        )

        monitor = ScrapingCompletionMonitor(db_session, max_wait_minutes=15, sink=event_sink)
        decision = monitor.check_report(report, now)

        assert decision.outcome == MonitorOutcome.TIMED_OUT
        assert monitor.state.get_report(report.id).status == ReportStatus.SCRAPING_COMPLETED
        db_session.refresh(scraping)
        assert scraping.app_store_scraper_status == ScraperStatus.FAILED
        assert "timed out" in scraping.error_message
        assert db_session.query(AlertLog).filter_by(alert_type="scraping_timeout").count() == 1

    def test_waits_before_timeout(self, db_session: Session, event_sink):
        """A running scraper within the wait window leaves the report alone."""
        from reviewpulse_core.domain.services.scraping_monitor import (
            MonitorOutcome,
            ScrapingCompletionMonitor,
        )

        now = utcnow()
        report = create_report(db_session, status=ReportStatus.SCRAPING)
        create_scraping_session(
            db_session,
            report,
            statuses={"app_store": "running"},
            started_at=now - timedelta(minutes=5),
        )

        monitor = ScrapingCompletionMonitor(db_session, sink=event_sink)
        decision = monitor.check_report(report, now)

        assert decision.outcome == MonitorOutcome.WAITING
        assert monitor.state.get_report(report.id).status == ReportStatus.SCRAPING

    def test_run_collects_ready_reports(self, db_session: Session, event_sink):
        """run() reports every advanced report id for scheduling."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingCompletionMonitor

        now = utcnow()
        done = create_report(db_session, status=ReportStatus.SCRAPING)
        create_scraping_session(
            db_session, done, statuses={"app_store": "completed", "google_play": "completed", "reddit": "completed"}
        )
        stuck = create_report(db_session, status=ReportStatus.SCRAPING)
        create_scraping_session(
            db_session, stuck, statuses={"reddit": "running"}, started_at=now - timedelta(minutes=30)
        )
        waiting = create_report(db_session, status=ReportStatus.SCRAPING)
        create_scraping_session(db_session, waiting, statuses={"reddit": "running"}, started_at=now)

        result = ScrapingCompletionMonitor(db_session, sink=event_sink).run(now)

        assert result.checked == 3
        assert result.completed == [done.id]
        assert result.timed_out == [stuck.id]
        assert result.waiting == [waiting.id]
        assert sorted(result.ready_report_ids) == sorted([done.id, stuck.id])

    def test_records_scraping_duration_metric(self, db_session: Session, event_sink):
        """Advancing a report writes a scraping_duration metric."""
        from reviewpulse_core.domain.services.scraping_monitor import ScrapingCompletionMonitor

        report = create_report(db_session, status=ReportStatus.SCRAPING)
        create_scraping_session(
            db_session, report, statuses={"app_store": "completed", "google_play": "completed", "reddit": "completed"}
        )

        ScrapingCompletionMonitor(db_session, sink=event_sink).check_report(report)

        assert db_session.query(SystemMetric).filter_by(metric_name="scraping_duration").count() == 1
