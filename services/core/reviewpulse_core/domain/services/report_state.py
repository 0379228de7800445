"""Report state coordinator.

Every report status change is a conditional update of the form
``UPDATE reports SET status=NEW WHERE id=X AND status=EXPECTED``. A
transition that matches zero rows means another worker already moved
the report; callers must stop rather than retry.

States:
    pending -> scraping -> scraping_completed -> analyzing -> completing -> completed
    failed / error are reachable from every non-terminal state.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.errors import InvalidTransitionError
from reviewpulse_core.domain.models import Report, ReportStatus, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {ReportStatus.COMPLETED, ReportStatus.FAILED, ReportStatus.ERROR}

_FAILURE_STATUSES = {ReportStatus.FAILED, ReportStatus.ERROR}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ReportStatus.PENDING: {ReportStatus.SCRAPING},
    ReportStatus.SCRAPING: {ReportStatus.SCRAPING_COMPLETED},
    ReportStatus.SCRAPING_COMPLETED: {ReportStatus.ANALYZING},
    ReportStatus.ANALYZING: {ReportStatus.COMPLETING},
    ReportStatus.COMPLETING: {ReportStatus.COMPLETED},
    ReportStatus.COMPLETED: set(),
    ReportStatus.FAILED: set(),
    ReportStatus.ERROR: set(),
}

# Columns callers may set alongside a status change
UPDATABLE_FIELDS = {
    "failure_stage",
    "error_message",
    "failure_details",
    "analysis_started_at",
    "completed_at",
}


class CompletionClaim(str):
    """Outcomes of trying to claim a report for completion."""

    ACQUIRED = "acquired"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_PROCESSING = "already_processing"
    STATUS_UPDATE_FAILED = "status_update_failed"
    NOT_FOUND = "not_found"


def is_valid_transition(current: str, new: str) -> bool:
    """Whether ``current -> new`` is an edge of the report state graph."""
    if current in TERMINAL_STATUSES:
        return False
    if new in _FAILURE_STATUSES:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, set())


class ReportStateService:
    """Compare-and-swap status transitions for reports."""

    def __init__(self, db: DBSession):
        self.db = db

    def get_report(self, report_id: int) -> Optional[Report]:
        """Load a report, refreshing any stale identity-map copy."""
        return (
            self.db.query(Report)
            .populate_existing()
            .filter(Report.id == report_id)
            .first()
        )

    def _build_values(self, new: str, fields: dict[str, Any]) -> dict:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported report fields: {sorted(unknown)}")
        values = {Report.status: new, Report.updated_at: utcnow()}
        for name, value in fields.items():
            values[getattr(Report, name)] = value
        return values

    def transition(self, report_id: int, expected: str, new: str, **fields: Any) -> bool:
        """Move a report from ``expected`` to ``new`` if it is still there.

        Args:
            report_id: The report ID.
            expected: Status the caller believes the report is in.
            new: Target status.
            **fields: Extra report columns to set in the same update.

        Returns:
            True if this caller performed the transition.

        Raises:
            InvalidTransitionError: If ``expected -> new`` is not allowed.
        """
        if not is_valid_transition(expected, new):
            raise InvalidTransitionError(expected, new)

        result = (
            self.db.query(Report)
            .filter(Report.id == report_id, Report.status == expected)
            .update(self._build_values(new, fields), synchronize_session=False)
        )
        self.db.flush()

        if result > 0:
            logger.info(f"Report {report_id}: {expected} -> {new}")
            return True
        logger.info(f"Report {report_id}: transition {expected} -> {new} lost the race")
        return False

    def force_transition(self, report_id: int, new: str, **fields: Any) -> bool:
        """Unconditionally set a report's status.

        Only used for the completion fallback, when the final
        ``completing -> completed`` update matched zero rows.
        """
        result = (
            self.db.query(Report)
            .filter(Report.id == report_id)
            .update(self._build_values(new, fields), synchronize_session=False)
        )
        self.db.flush()
        logger.warning(f"Report {report_id}: forced status to {new}")
        return result > 0

    def claim_completion(self, report_id: int) -> str:
        """Try to take ownership of a report's completion.

        Returns:
            A CompletionClaim value. Only ACQUIRED means the caller
            should run the consolidation.
        """
        if self.transition(report_id, ReportStatus.ANALYZING, ReportStatus.COMPLETING):
            return CompletionClaim.ACQUIRED

        report = self.get_report(report_id)
        if report is None:
            return CompletionClaim.NOT_FOUND
        if report.status == ReportStatus.COMPLETED:
            return CompletionClaim.ALREADY_COMPLETED
        if report.status == ReportStatus.COMPLETING:
            return CompletionClaim.ALREADY_PROCESSING
        return CompletionClaim.STATUS_UPDATE_FAILED

    def reclaim_stale_completion(self, report_id: int, stale_after: timedelta) -> bool:
        """Take over a completion whose owner stopped making progress.

        Succeeds only if the report is still ``completing`` and has not
        been touched for ``stale_after``.
        """
        cutoff = utcnow() - stale_after
        result = (
            self.db.query(Report)
            .filter(
                Report.id == report_id,
                Report.status == ReportStatus.COMPLETING,
                Report.updated_at < cutoff,
            )
            .update({Report.updated_at: utcnow()}, synchronize_session=False)
        )
        self.db.flush()
        return result > 0

    def mark_failed(
        self,
        report_id: int,
        stage: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status: str = ReportStatus.FAILED,
    ) -> bool:
        """Fail a report that is not yet terminal.

        Returns:
            True if the report was moved to the failure status.
        """
        if status not in _FAILURE_STATUSES:
            raise ValueError(f"Not a failure status: {status}")

        result = (
            self.db.query(Report)
            .filter(
                Report.id == report_id,
                Report.status.notin_(TERMINAL_STATUSES),
            )
            .update(
                self._build_values(
                    status,
                    {
                        "failure_stage": stage,
                        "error_message": message,
                        "failure_details": details,
                    },
                ),
                synchronize_session=False,
            )
        )
        self.db.flush()
        if result > 0:
            logger.warning(f"Report {report_id} failed at {stage}: {message}")
        return result > 0

    def list_reports(
        self,
        status: str,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Report]:
        """Reports in a status, oldest first."""
        query = self.db.query(Report).filter(Report.status == status)
        if updated_before is not None:
            query = query.filter(Report.updated_at < updated_before)
        return query.order_by(Report.updated_at.asc(), Report.id.asc()).limit(limit).all()
