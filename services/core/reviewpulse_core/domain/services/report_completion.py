"""Report completion coordinator.

Runs once every analysis task of a report has settled. The caller that
wins the ``analyzing -> completing`` transition gathers the theme
candidates of all completed tasks, consolidates them per platform and
replaces the report's Theme, Quote and Suggestion rows. Losing callers
return without writing anything.

Usage:
    coordinator = ReportCompletionCoordinator(db, max_themes=50)
    result = coordinator.maybe_complete(report_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.errors import NoCompletedTasksError, TransientCompletionError
from reviewpulse_core.domain.models import (
    ALL_PLATFORMS,
    AnalysisTask,
    AnalysisTaskStatus,
    Quote,
    ReportStatus,
    Suggestion,
    Theme,
    utcnow,
)
from reviewpulse_core.domain.services.batch_scheduler import BatchScheduler
from reviewpulse_core.domain.services.batch_worker import candidates_from_task
from reviewpulse_core.domain.services.report_state import CompletionClaim, ReportStateService
from reviewpulse_core.domain.services.theme_consolidation import (
    ConsolidationConfig,
    ThemeConsolidationEngine,
)
from reviewpulse_core.domain.services.theme_similarity import normalize_text
from reviewpulse_core.observability.sink import PipelineEventSink

logger = logging.getLogger(__name__)

DEFAULT_STALE_COMPLETION = timedelta(minutes=60)


class CompletionStatus(str):
    """Outcomes of a completion attempt."""

    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_PROCESSING = "already_processing"
    NOT_READY = "not_ready"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class CompletionResult:
    """Outcome of one completion attempt."""

    report_id: int
    status: str
    theme_counts: dict[str, int] = field(default_factory=dict)
    candidate_counts: dict[str, int] = field(default_factory=dict)
    dropped_quotes: int = 0
    forced: bool = False
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (
            CompletionStatus.COMPLETED,
            CompletionStatus.ALREADY_COMPLETED,
            CompletionStatus.ALREADY_PROCESSING,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "status": self.status,
            "success": self.success,
            "theme_counts": self.theme_counts,
            "candidate_counts": self.candidate_counts,
            "dropped_quotes": self.dropped_quotes,
            "forced": self.forced,
            "message": self.message,
        }


def filter_quote_provenance(
    themes: list[dict[str, Any]],
    candidates: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], int]:
    """Drop output quotes that no input candidate contains.

    Quotes are compared after normalization.

    Returns:
        Tuple of (themes with filtered quotes, number of quotes dropped).
    """
    known = {
        normalize_text(q)
        for c in candidates
        for q in (c.get("quotes") or [])
        if isinstance(q, str)
    }
    dropped = 0
    filtered = []
    for theme in themes:
        quotes = [q for q in theme.get("quotes", []) if normalize_text(q) in known]
        dropped += len(theme.get("quotes", [])) - len(quotes)
        filtered.append({**theme, "quotes": quotes})
    return filtered, dropped


class ReportCompletionCoordinator:
    """Consolidate and persist the final themes of a report exactly once."""

    def __init__(
        self,
        db: DBSession,
        sink: Optional[PipelineEventSink] = None,
        max_themes: int = 50,
        stale_completion: timedelta = DEFAULT_STALE_COMPLETION,
    ):
        self.db = db
        self.state = ReportStateService(db)
        self.sink = sink or PipelineEventSink(db)
        self.engine = ThemeConsolidationEngine(ConsolidationConfig(max_themes=max_themes))
        self.stale_completion = stale_completion

    # -------------------------------------------------------------------------
    # Gathering
    # -------------------------------------------------------------------------

    def gather_candidates(self, report_id: int) -> dict[str, list[dict[str, Any]]]:
        """Theme candidates of every completed task, grouped by platform.

        Raises:
            NoCompletedTasksError: If the report has no completed task.
        """
        tasks = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.report_id == report_id,
                AnalysisTask.status == AnalysisTaskStatus.COMPLETED,
            )
            .order_by(AnalysisTask.batch_index.asc())
            .all()
        )
        if not tasks:
            raise NoCompletedTasksError(f"No completed analysis tasks for report {report_id}")

        by_platform: dict[str, list[dict[str, Any]]] = {}
        for task in tasks:
            for platform, candidates in candidates_from_task(task.themes_data).items():
                by_platform.setdefault(platform, []).extend(candidates)
        return by_platform

    def _platforms_for(self, report_id: int, by_platform: dict[str, list]) -> list[str]:
        """Platforms that fed at least one task, in a stable order."""
        platforms = set(by_platform)
        rows = (
            self.db.query(AnalysisTask.reviews_data)
            .filter(
                AnalysisTask.report_id == report_id,
                AnalysisTask.status == AnalysisTaskStatus.COMPLETED,
            )
            .all()
        )
        for (reviews,) in rows:
            for review in reviews or []:
                if isinstance(review, dict) and review.get("platform"):
                    platforms.add(review["platform"])
        ordered = [p for p in ALL_PLATFORMS if p in platforms]
        return ordered + sorted(platforms - set(ordered))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def replace_themes(self, report_id: int, themes_by_platform: dict[str, list[dict[str, Any]]]) -> int:
        """Delete the report's theme rows and insert the new ones.

        Returns:
            Number of themes inserted.
        """
        theme_ids = self.db.query(Theme.id).filter(Theme.report_id == report_id)
        self.db.query(Quote).filter(Quote.theme_id.in_(theme_ids.scalar_subquery())).delete(
            synchronize_session=False
        )
        self.db.query(Suggestion).filter(
            Suggestion.theme_id.in_(theme_ids.scalar_subquery())
        ).delete(synchronize_session=False)
        self.db.query(Theme).filter(Theme.report_id == report_id).delete(synchronize_session=False)

        inserted = 0
        for platform, themes in themes_by_platform.items():
            for rank, data in enumerate(themes, start=1):
                theme = Theme(
                    report_id=report_id,
                    platform=platform,
                    title=data["title"][:255],
                    description=data.get("description") or "",
                    rank=rank,
                )
                theme.quotes = [Quote(text=q, source=platform) for q in data.get("quotes", [])]
                theme.suggestions = [Suggestion(text=s) for s in data.get("suggestions", [])]
                self.db.add(theme)
                inserted += 1
        self.db.flush()
        return inserted

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def complete_report(self, report_id: int, reclaim: bool = False) -> CompletionResult:
        """Consolidate a report's themes if this caller wins the claim.

        Args:
            report_id: The report ID.
            reclaim: Take over a completion left in ``completing`` by a
                worker that stopped making progress.

        Raises:
            TransientCompletionError: If the claim failed for an
                unexpected reason and the call may be retried.
        """
        claim = self.state.claim_completion(report_id)
        if claim == CompletionClaim.ALREADY_PROCESSING and reclaim:
            if self.state.reclaim_stale_completion(report_id, self.stale_completion):
                logger.warning(f"Report {report_id}: reclaimed stale completion")
                claim = CompletionClaim.ACQUIRED

        if claim == CompletionClaim.NOT_FOUND:
            return CompletionResult(report_id=report_id, status=CompletionStatus.NOT_FOUND)
        if claim == CompletionClaim.ALREADY_COMPLETED:
            logger.info(f"Report {report_id} already completed")
            return CompletionResult(report_id=report_id, status=CompletionStatus.ALREADY_COMPLETED)
        if claim == CompletionClaim.ALREADY_PROCESSING:
            logger.info(f"Report {report_id} is being completed by another worker")
            return CompletionResult(report_id=report_id, status=CompletionStatus.ALREADY_PROCESSING)
        if claim != CompletionClaim.ACQUIRED:
            report = self.state.get_report(report_id)
            raise TransientCompletionError(
                f"Could not claim completion of report {report_id} "
                f"(status {report.status if report else 'missing'})"
            )

        self.db.commit()
        started = utcnow()
        result = CompletionResult(report_id=report_id, status=CompletionStatus.COMPLETED)

        try:
            by_platform = self.gather_candidates(report_id)
        except NoCompletedTasksError as e:
            self.state.mark_failed(report_id, stage="completion", message=str(e))
            self.db.commit()
            result.status = CompletionStatus.FAILED
            result.message = str(e)
            return result

        themes_by_platform: dict[str, list[dict[str, Any]]] = {}
        for platform in self._platforms_for(report_id, by_platform):
            candidates = by_platform.get(platform, [])
            themes = self.engine.consolidate(candidates, platform=platform)
            themes, dropped = filter_quote_provenance(themes, candidates)
            if dropped:
                logger.error(f"Report {report_id}: dropped {dropped} untraceable quotes for {platform}")
            result.dropped_quotes += dropped
            result.candidate_counts[platform] = len(candidates)
            result.theme_counts[platform] = len(themes)
            themes_by_platform[platform] = themes

        try:
            self.replace_themes(report_id, themes_by_platform)
            if not self.state.transition(
                report_id,
                ReportStatus.COMPLETING,
                ReportStatus.COMPLETED,
                completed_at=utcnow(),
            ):
                result.forced = self.state.force_transition(
                    report_id, ReportStatus.COMPLETED, completed_at=utcnow()
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save themes for report {report_id}: {e}", exc_info=True)
            self.state.mark_failed(
                report_id,
                stage="completion",
                message=f"Failed to save consolidated themes: {e}",
            )
            self.db.commit()
            result.status = CompletionStatus.FAILED
            result.message = str(e)
            return result

        self.sink.metric(
            "report_completion_time",
            (utcnow() - started).total_seconds(),
            "seconds",
            {"report_id": report_id, "themes": sum(result.theme_counts.values())},
        )
        logger.info(f"Report {report_id} completed with themes {result.theme_counts}")
        return result

    def maybe_complete(self, report_id: int, scheduler: Optional[BatchScheduler] = None) -> CompletionResult:
        """Complete the report if all of its tasks have settled.

        The failure ratio is checked first, so a report with too many
        failed batches is failed instead of completed.
        """
        report = self.state.get_report(report_id)
        if report is None:
            return CompletionResult(report_id=report_id, status=CompletionStatus.NOT_FOUND)
        if report.status == ReportStatus.COMPLETED:
            return CompletionResult(report_id=report_id, status=CompletionStatus.ALREADY_COMPLETED)
        if report.status == ReportStatus.COMPLETING:
            return CompletionResult(report_id=report_id, status=CompletionStatus.ALREADY_PROCESSING)
        if report.status != ReportStatus.ANALYZING:
            return CompletionResult(
                report_id=report_id,
                status=CompletionStatus.NOT_READY,
                message=f"Report is {report.status}",
            )

        scheduler = scheduler or BatchScheduler(self.db, sink=self.sink)
        progress = scheduler.evaluate_report(report_id)
        if progress.report_failed:
            self.db.commit()
            return CompletionResult(
                report_id=report_id,
                status=CompletionStatus.FAILED,
                message="Too many analysis batches failed",
            )
        if not progress.settled:
            return CompletionResult(
                report_id=report_id,
                status=CompletionStatus.NOT_READY,
                message=f"{progress.pending + progress.processing} tasks still running",
            )
        return self.complete_report(report_id)
