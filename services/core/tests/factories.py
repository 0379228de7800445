"""Test data factories for ReviewPulse Core.

This module provides factory functions to create test data for models.
Use these instead of manually constructing objects in tests for consistency.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from reviewpulse_core.domain.models import (
    ALL_PLATFORMS,
    AnalysisTask,
    AnalysisTaskStatus,
    Report,
    ReportStatus,
    ScrapedReview,
    ScraperStatus,
    ScrapingSession,
    ScrapingSessionStatus,
    utcnow,
)


# -----------------------------------------------------------------------------
# Report Factory
# -----------------------------------------------------------------------------


def create_report(
    session: Session,
    app_name: str = "Notely",
    status: str = ReportStatus.PENDING,
    enabled_platforms: Optional[list[str]] = None,
    **kwargs: Any,
) -> Report:
    """Create a Report record for testing."""
    report = Report(
        app_name=app_name,
        status=status,
        enabled_platforms=enabled_platforms,
        **kwargs,
    )
    session.add(report)
    session.flush()
    return report


# -----------------------------------------------------------------------------
# Scraping Factories
# -----------------------------------------------------------------------------


def create_scraping_session(
    session: Session,
    report: Report,
    statuses: Optional[dict[str, str]] = None,
    started_at: Optional[datetime] = None,
    status: str = ScrapingSessionStatus.RUNNING,
    **kwargs: Any,
) -> ScrapingSession:
    """Create a ScrapingSession with the given per-platform scraper statuses.

    Platforms missing from ``statuses`` are pending.
    """
    statuses = statuses or {}
    scraping = ScrapingSession(
        report_id=report.id,
        app_name=report.app_name,
        status=status,
        enabled_platforms=report.enabled_platforms,
        started_at=started_at or utcnow(),
        **kwargs,
    )
    for platform in ALL_PLATFORMS:
        setattr(
            scraping,
            f"{platform}_scraper_status",
            statuses.get(platform, ScraperStatus.PENDING),
        )
    session.add(scraping)
    session.flush()
    return scraping


def create_review(
    session: Session,
    scraping_session: ScrapingSession,
    platform: str = "app_store",
    review_text: str = "The app keeps crashing whenever I open a note.",
    rating: Optional[int] = 2,
    review_date: Optional[datetime] = None,
    **kwargs: Any,
) -> ScrapedReview:
    """Create a ScrapedReview record for testing."""
    review = ScrapedReview(
        scraping_session_id=scraping_session.id,
        platform=platform,
        review_text=review_text,
        rating=rating,
        review_date=review_date if review_date is not None else utcnow() - timedelta(days=3),
        **kwargs,
    )
    session.add(review)
    session.flush()
    return review


def review_dict(
    platform: str = "app_store",
    review_text: str = "The app keeps crashing whenever I open a note.",
    review_id: int = 1,
    rating: Optional[int] = 3,
    review_date: Optional[datetime] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """A review in the dict shape stored on analysis tasks."""
    return {
        "id": review_id,
        "platform": platform,
        "review_text": review_text,
        "rating": rating,
        "review_date": review_date.isoformat() if review_date else None,
        "author_name": None,
        "source_url": None,
        "metadata": metadata or {},
    }


# -----------------------------------------------------------------------------
# Analysis Task Factory
# -----------------------------------------------------------------------------


def create_analysis_task(
    session: Session,
    report: Report,
    batch_index: int = 0,
    status: str = AnalysisTaskStatus.PENDING,
    reviews: Optional[list[dict[str, Any]]] = None,
    themes_data: Optional[dict[str, Any]] = None,
    **kwargs: Any,
) -> AnalysisTask:
    """Create an AnalysisTask record for testing."""
    task = AnalysisTask(
        report_id=report.id,
        batch_index=batch_index,
        priority=kwargs.pop("priority", 7),
        reviews_data=reviews if reviews is not None else [review_dict()],
        status=status,
        themes_data=themes_data,
        retry_count=kwargs.pop("retry_count", 0),
        max_retries=kwargs.pop("max_retries", 3),
        **kwargs,
    )
    session.add(task)
    session.flush()
    return task


# -----------------------------------------------------------------------------
# Theme Candidate Helpers
# -----------------------------------------------------------------------------


def candidate(
    title: str,
    description: str = "",
    quotes: Optional[list[str]] = None,
    suggestions: Optional[list[str]] = None,
    platform: Optional[str] = "app_store",
) -> dict[str, Any]:
    """A theme candidate dict as produced by the extraction step."""
    return {
        "title": title,
        "description": description,
        "quotes": quotes or [],
        "suggestions": suggestions or [],
        "platform": platform,
    }


def themes_payload(candidates_by_platform: dict[str, list[dict[str, Any]]]) -> dict[str, Any]:
    """A completed task's themes_data payload."""
    return {
        "platforms": candidates_by_platform,
        "theme_count": sum(len(c) for c in candidates_by_platform.values()),
        "review_count": 0,
    }
