"""Domain models for ReviewPulse.

This module defines the SQLAlchemy ORM models for the report-processing
pipeline: reports, scraping sessions, raw reviews, analysis tasks, the
consolidated theme tables and the monitoring sink tables.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DATETIME columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================


class ReportStatus(str):
    """Report lifecycle status values."""

    PENDING = "pending"
    SCRAPING = "scraping"
    SCRAPING_COMPLETED = "scraping_completed"
    ANALYZING = "analyzing"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class ScrapingSessionStatus(str):
    """Scraping session status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ScraperStatus(str):
    """Per-platform scraper status values."""

    DISABLED = "disabled"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(str):
    """Review source platforms."""

    APP_STORE = "app_store"
    GOOGLE_PLAY = "google_play"
    REDDIT = "reddit"


class AnalysisTaskStatus(str):
    """Analysis task status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertSeverity(str):
    """Alert severity values."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


ALL_PLATFORMS = [Platform.APP_STORE, Platform.GOOGLE_PLAY, Platform.REDDIT]

REPORT_STATUSES = (
    ReportStatus.PENDING,
    ReportStatus.SCRAPING,
    ReportStatus.SCRAPING_COMPLETED,
    ReportStatus.ANALYZING,
    ReportStatus.COMPLETING,
    ReportStatus.COMPLETED,
    ReportStatus.FAILED,
    ReportStatus.ERROR,
)

SCRAPER_STATUSES = (
    ScraperStatus.DISABLED,
    ScraperStatus.PENDING,
    ScraperStatus.RUNNING,
    ScraperStatus.COMPLETED,
    ScraperStatus.FAILED,
)


# =============================================================================
# REPORTS AND SCRAPING
# =============================================================================


class Report(Base):
    """A user-submitted request to analyze reviews for one app."""

    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    app_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(*REPORT_STATUSES, name="report_status_enum"),
        nullable=False,
        default=ReportStatus.PENDING,
    )
    enabled_platforms: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    failure_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    analysis_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_reports_status", "status", "updated_at"),)


class ScrapingSession(Base):
    """One scraping run for a report, tracking each platform scraper."""

    __tablename__ = "scraping_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False
    )
    app_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("pending", "running", "completed", "error", name="scraping_session_status_enum"),
        nullable=False,
        default=ScrapingSessionStatus.PENDING,
    )
    enabled_platforms: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    app_store_scraper_status: Mapped[str] = mapped_column(
        Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
        nullable=False,
        default=ScraperStatus.PENDING,
    )
    google_play_scraper_status: Mapped[str] = mapped_column(
        Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
        nullable=False,
        default=ScraperStatus.PENDING,
    )
    reddit_scraper_status: Mapped[str] = mapped_column(
        Enum(*SCRAPER_STATUSES, name="scraper_status_enum"),
        nullable=False,
        default=ScraperStatus.PENDING,
    )

    app_store_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    google_play_reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reddit_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_reviews_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_scraping_sessions_report", "report_id", "status"),)

    def scraper_status(self, platform: str) -> str:
        """Return the scraper status column value for a platform."""
        return getattr(self, f"{platform}_scraper_status")


class ScrapedReview(Base):
    """A raw review or post written by one of the scrapers."""

    __tablename__ = "scraped_reviews"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    scraping_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("scraping_sessions.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(
        Enum("app_store", "google_play", "reddit", name="review_platform_enum"),
        nullable=False,
    )
    review_text: Mapped[str] = mapped_column(Text, nullable=False)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    review_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_scraped_reviews_session_platform", "scraping_session_id", "platform"),
    )


# =============================================================================
# ANALYSIS TASKS
# =============================================================================


class AnalysisTask(Base):
    """One batch of reviews queued for theme extraction."""

    __tablename__ = "analysis_tasks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False
    )
    scraping_session_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("scraping_sessions.id", ondelete="SET NULL"), nullable=True
    )
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    reviews_data: Mapped[list] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        Enum("pending", "processing", "completed", "failed", name="analysis_task_status_enum"),
        nullable=False,
        default=AnalysisTaskStatus.PENDING,
    )
    themes_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("report_id", "batch_index", name="uq_analysis_task_batch"),
        Index("idx_analysis_tasks_status", "status", "next_attempt_at"),
        Index("idx_analysis_tasks_report", "report_id", "status"),
    )


# =============================================================================
# CONSOLIDATED THEMES
# =============================================================================


class Theme(Base):
    """A consolidated product-feedback theme for one report and platform."""

    __tablename__ = "themes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rank: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    quotes: Mapped[list["Quote"]] = relationship(
        back_populates="theme", cascade="all, delete-orphan", order_by="Quote.id"
    )
    suggestions: Mapped[list["Suggestion"]] = relationship(
        back_populates="theme", cascade="all, delete-orphan", order_by="Suggestion.id"
    )

    __table_args__ = (Index("idx_themes_report_platform", "report_id", "platform", "rank"),)


class Quote(Base):
    """A verbatim review excerpt supporting a theme."""

    __tablename__ = "quotes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    theme_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("themes.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    theme: Mapped["Theme"] = relationship(back_populates="quotes")


class Suggestion(Base):
    """An actionable suggestion attached to a theme."""

    __tablename__ = "suggestions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    theme_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("themes.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)

    theme: Mapped["Theme"] = relationship(back_populates="suggestions")


# =============================================================================
# MONITORING SINK
# =============================================================================


class SystemMetric(Base):
    """A pipeline metric sample."""

    __tablename__ = "system_metrics"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    metric_name: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    metric_unit: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tags: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_system_metrics_name", "metric_name", "recorded_at"),)


class AlertLog(Base):
    """An operational alert raised by the pipeline."""

    __tablename__ = "alert_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(
        Enum("info", "warning", "error", "critical", name="alert_severity_enum"),
        nullable=False,
        default=AlertSeverity.WARNING,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_alert_logs_type", "alert_type", "created_at"),)


class CronExecutionLog(Base):
    """One execution record of a periodic pipeline task."""

    __tablename__ = "cron_execution_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_cron_execution_log_job", "job_name", "executed_at"),)
