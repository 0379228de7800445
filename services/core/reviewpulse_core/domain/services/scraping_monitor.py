"""Scraping session lifecycle and completion monitor.

Scrapers report per-platform status on the active ScrapingSession. The
monitor runs periodically over every report in ``scraping`` and moves
it to ``scraping_completed`` once all enabled scrapers reached a
terminal state with at least one success, or once the maximum wait time
elapsed (forced completion).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.errors import ReportNotFoundError
from reviewpulse_core.domain.models import (
    ALL_PLATFORMS,
    AlertSeverity,
    Platform,
    Report,
    ReportStatus,
    ScrapedReview,
    ScraperStatus,
    ScrapingSession,
    ScrapingSessionStatus,
    utcnow,
)
from reviewpulse_core.domain.services.report_state import ReportStateService
from reviewpulse_core.observability.sink import PipelineEventSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_MINUTES = 15

TERMINAL_SCRAPER_STATUSES = {ScraperStatus.COMPLETED, ScraperStatus.FAILED}

ACTIVE_SESSION_STATUSES = {ScrapingSessionStatus.PENDING, ScrapingSessionStatus.RUNNING}

_COUNT_COLUMNS = {
    Platform.APP_STORE: "app_store_reviews",
    Platform.GOOGLE_PLAY: "google_play_reviews",
    Platform.REDDIT: "reddit_posts",
}


# =============================================================================
# RESULT STRUCTURES
# =============================================================================


@dataclass
class ScrapingStats:
    """Review counts per platform for one scraping session."""

    app_store: int = 0
    google_play: int = 0
    reddit: int = 0

    @property
    def total(self) -> int:
        return self.app_store + self.google_play + self.reddit

    def to_dict(self) -> dict[str, int]:
        return {
            "app_store": self.app_store,
            "google_play": self.google_play,
            "reddit": self.reddit,
            "total": self.total,
        }


class MonitorOutcome(str):
    """What the monitor did with one report."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    WAITING = "waiting"
    SKIPPED = "skipped"


@dataclass
class MonitorDecision:
    """The monitor's verdict for one report."""

    report_id: int
    outcome: str
    elapsed_minutes: float = 0.0
    statuses: dict[str, str] = field(default_factory=dict)
    stats: Optional[ScrapingStats] = None

    @property
    def advanced(self) -> bool:
        return self.outcome in (MonitorOutcome.COMPLETED, MonitorOutcome.TIMED_OUT)


@dataclass
class ScrapingMonitorResult:
    """Summary of one monitor run."""

    checked: int = 0
    completed: list[int] = field(default_factory=list)
    timed_out: list[int] = field(default_factory=list)
    waiting: list[int] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ready_report_ids(self) -> list[int]:
        """Reports handed over to the batch scheduler."""
        return self.completed + self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "timed_out": self.timed_out,
            "waiting": self.waiting,
            "errors": self.errors,
        }


# =============================================================================
# PREDICATE
# =============================================================================


def resolve_enabled_platforms(enabled: Optional[Iterable[str]]) -> list[str]:
    """Known platforms from an enabled list, defaulting to all of them."""
    if not enabled:
        return list(ALL_PLATFORMS)
    wanted = set(enabled)
    return [p for p in ALL_PLATFORMS if p in wanted]


def is_scraping_complete(statuses: dict[str, str], enabled_platforms: Optional[Iterable[str]] = None) -> bool:
    """All enabled scrapers are terminal and at least one completed.

    A platform whose scraper reports ``disabled`` is not enabled, even if
    the enabled list names it.
    """
    platforms = resolve_enabled_platforms(enabled_platforms)
    enabled_statuses = [
        statuses.get(p, ScraperStatus.PENDING)
        for p in platforms
        if statuses.get(p) != ScraperStatus.DISABLED
    ]
    if not enabled_statuses:
        return False
    return all(s in TERMINAL_SCRAPER_STATUSES for s in enabled_statuses) and any(
        s == ScraperStatus.COMPLETED for s in enabled_statuses
    )


# =============================================================================
# SESSION SERVICE (scraper-facing)
# =============================================================================


class ScrapingSessionService:
    """Create scraping sessions and record scraper progress."""

    def __init__(self, db: DBSession):
        self.db = db
        self.state = ReportStateService(db)

    def get_active_session(self, report_id: int) -> Optional[ScrapingSession]:
        return (
            self.db.query(ScrapingSession)
            .filter(
                ScrapingSession.report_id == report_id,
                ScrapingSession.status.in_(ACTIVE_SESSION_STATUSES),
            )
            .order_by(ScrapingSession.id.desc())
            .first()
        )

    def get_latest_session(self, report_id: int) -> Optional[ScrapingSession]:
        return (
            self.db.query(ScrapingSession)
            .filter(ScrapingSession.report_id == report_id)
            .order_by(ScrapingSession.id.desc())
            .first()
        )

    def start_scraping(self, report_id: int, now: Optional[datetime] = None) -> tuple[ScrapingSession, bool]:
        """Find or create the active session and move the report to scraping.

        Safe to call repeatedly for the same report.

        Returns:
            Tuple of (session, created).

        Raises:
            ReportNotFoundError: If the report does not exist.
        """
        now = now or utcnow()
        report = self.state.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(report_id)

        session = self.get_active_session(report_id)
        created = False
        if session is None:
            enabled = resolve_enabled_platforms(report.enabled_platforms)
            session = ScrapingSession(
                report_id=report_id,
                app_name=report.app_name,
                status=ScrapingSessionStatus.RUNNING,
                enabled_platforms=enabled,
                started_at=now,
            )
            for platform in ALL_PLATFORMS:
                status = ScraperStatus.PENDING if platform in enabled else ScraperStatus.DISABLED
                setattr(session, f"{platform}_scraper_status", status)
            self.db.add(session)
            self.db.flush()
            created = True
            logger.info(f"Created scraping session {session.id} for report {report_id}")

        if report.status == ReportStatus.PENDING:
            self.state.transition(report_id, ReportStatus.PENDING, ReportStatus.SCRAPING)

        return session, created

    def update_platform_status(
        self,
        session_id: int,
        platform: str,
        status: str,
        review_count: Optional[int] = None,
    ) -> ScrapingSession:
        """Record a scraper's status for its platform.

        Raises:
            ValueError: For an unknown platform, status or session.
        """
        if platform not in ALL_PLATFORMS:
            raise ValueError(f"Unknown platform: {platform}")
        if status not in TERMINAL_SCRAPER_STATUSES | {ScraperStatus.PENDING, ScraperStatus.RUNNING, ScraperStatus.DISABLED}:
            raise ValueError(f"Unknown scraper status: {status}")

        session = self.db.get(ScrapingSession, session_id)
        if session is None:
            raise ValueError(f"Scraping session {session_id} not found")

        setattr(session, f"{platform}_scraper_status", status)
        if review_count is not None:
            setattr(session, _COUNT_COLUMNS[platform], review_count)
        if status == ScraperStatus.RUNNING and session.status == ScrapingSessionStatus.PENDING:
            session.status = ScrapingSessionStatus.RUNNING
            session.started_at = session.started_at or utcnow()
        self.db.flush()
        return session

    def record_reviews(self, session_id: int, platform: str, reviews: list[dict[str, Any]]) -> int:
        """Store raw reviews written by a scraper.

        Returns:
            Number of rows inserted.
        """
        rows = [
            ScrapedReview(
                scraping_session_id=session_id,
                platform=platform,
                review_text=r["review_text"],
                rating=r.get("rating"),
                review_date=r.get("review_date"),
                author_name=r.get("author_name"),
                source_url=r.get("source_url"),
                metadata_json=r.get("metadata") or r.get("additional_data"),
            )
            for r in reviews
            if r.get("review_text")
        ]
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)


# =============================================================================
# MONITOR
# =============================================================================


class ScrapingCompletionMonitor:
    """Advance reports whose scraping phase is done or has timed out."""

    def __init__(
        self,
        db: DBSession,
        max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES,
        sink: Optional[PipelineEventSink] = None,
    ):
        self.db = db
        self.max_wait = timedelta(minutes=max_wait_minutes)
        self.state = ReportStateService(db)
        self.sessions = ScrapingSessionService(db)
        self.sink = sink or PipelineEventSink(db)

    def aggregate_review_counts(self, session_id: int) -> ScrapingStats:
        """Count stored reviews per platform for a session."""
        rows = (
            self.db.query(ScrapedReview.platform, func.count(ScrapedReview.id))
            .filter(ScrapedReview.scraping_session_id == session_id)
            .group_by(ScrapedReview.platform)
            .all()
        )
        stats = ScrapingStats()
        for platform, count in rows:
            if platform in ALL_PLATFORMS:
                setattr(stats, platform, int(count))
        return stats

    def check_report(self, report: Report, now: Optional[datetime] = None) -> MonitorDecision:
        """Evaluate one report and advance it if scraping is over."""
        now = now or utcnow()
        session = self.sessions.get_latest_session(report.id)
        enabled = resolve_enabled_platforms(
            (session.enabled_platforms if session else None) or report.enabled_platforms
        )

        if session is None:
            statuses: dict[str, str] = {}
            started_at = report.updated_at or report.created_at
        else:
            statuses = {p: session.scraper_status(p) for p in enabled}
            started_at = session.started_at or session.created_at

        elapsed = now - started_at if started_at else timedelta(0)
        decision = MonitorDecision(
            report_id=report.id,
            outcome=MonitorOutcome.WAITING,
            elapsed_minutes=round(elapsed.total_seconds() / 60, 2),
            statuses=statuses,
        )

        if session is not None and is_scraping_complete(statuses, enabled):
            forced = False
        elif elapsed > self.max_wait:
            forced = True
        else:
            return decision

        if not self.state.transition(report.id, ReportStatus.SCRAPING, ReportStatus.SCRAPING_COMPLETED):
            decision.outcome = MonitorOutcome.SKIPPED
            return decision

        if session is not None:
            decision.stats = self._close_session(session, enabled, now, forced)
        else:
            decision.stats = ScrapingStats()

        decision.outcome = MonitorOutcome.TIMED_OUT if forced else MonitorOutcome.COMPLETED
        self.sink.metric(
            "scraping_duration",
            elapsed.total_seconds(),
            "seconds",
            {"report_id": report.id, "forced": forced},
        )
        if forced:
            self.sink.alert(
                "scraping_timeout",
                AlertSeverity.WARNING,
                f"Report {report.id} scraping forced complete after {decision.elapsed_minutes} minutes",
                {"report_id": report.id, "statuses": statuses},
            )
        logger.info(
            f"Report {report.id} scraping {decision.outcome}: "
            f"{decision.stats.total} reviews, statuses={statuses}"
        )
        return decision

    def _close_session(
        self,
        session: ScrapingSession,
        enabled: list[str],
        now: datetime,
        forced: bool,
    ) -> ScrapingStats:
        stats = self.aggregate_review_counts(session.id)
        session.app_store_reviews = stats.app_store
        session.google_play_reviews = stats.google_play
        session.reddit_posts = stats.reddit
        session.total_reviews_found = stats.total
        session.status = ScrapingSessionStatus.COMPLETED
        session.completed_at = now

        if forced:
            timed_out = [
                p
                for p in enabled
                if session.scraper_status(p) not in TERMINAL_SCRAPER_STATUSES | {ScraperStatus.DISABLED}
            ]
            for platform in timed_out:
                setattr(session, f"{platform}_scraper_status", ScraperStatus.FAILED)
            if timed_out:
                session.error_message = (
                    f"Scrapers timed out after {int(self.max_wait.total_seconds() // 60)} minutes: "
                    + ", ".join(timed_out)
                )
        self.db.flush()
        return stats

    def run(self, now: Optional[datetime] = None, limit: int = 100) -> ScrapingMonitorResult:
        """Check every report currently in scraping.

        Errors on one report are recorded and do not stop the run.
        """
        now = now or utcnow()
        result = ScrapingMonitorResult()

        for report in self.state.list_reports(ReportStatus.SCRAPING, limit=limit):
            result.checked += 1
            try:
                decision = self.check_report(report, now)
            except Exception as e:
                logger.error(f"Scraping monitor failed for report {report.id}: {e}", exc_info=True)
                result.errors.append({"report_id": report.id, "error": str(e)})
                continue

            if decision.outcome == MonitorOutcome.COMPLETED:
                result.completed.append(report.id)
            elif decision.outcome == MonitorOutcome.TIMED_OUT:
                result.timed_out.append(report.id)
            elif decision.outcome == MonitorOutcome.WAITING:
                result.waiting.append(report.id)

        return result
