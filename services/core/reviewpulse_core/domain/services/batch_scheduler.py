"""Batch scheduler and retry queue for review analysis.

Once a report's scraping phase is over, its reviews are filtered,
ranked and split into platform-aware batches, one AnalysisTask per
batch. Workers pull eligible tasks (claimed with a conditional
``pending -> processing`` update), and failures are re-queued with a
capped exponential backoff until the task's retry budget is spent.

Usage:
    scheduler = BatchScheduler(db, SchedulerConfig.from_settings(get_settings()))
    scheduler.schedule_report(report_id)

    tasks = scheduler.claim_tasks(limit=5)
    ...
    scheduler.record_success(task.id, themes_data, duration_seconds=12.5)
    # or
    decision = scheduler.record_failure(task.id, error)
"""

import asyncio
import hashlib
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.errors import ExtractionTimeoutError, ReportNotFoundError
from reviewpulse_core.domain.models import (
    AlertLog,
    AlertSeverity,
    AnalysisTask,
    AnalysisTaskStatus,
    CronExecutionLog,
    Platform,
    ReportStatus,
    ScrapedReview,
    ScrapingSession,
    SystemMetric,
    utcnow,
)
from reviewpulse_core.domain.services.report_state import ReportStateService
from reviewpulse_core.domain.services.retry_policy import RetryPolicy, classify_error
from reviewpulse_core.observability.sink import PipelineEventSink

if TYPE_CHECKING:
    from reviewpulse_core.config import Settings
    from reviewpulse_core.domain.services.batch_worker import BatchOutcome, BatchWorker

logger = logging.getLogger(__name__)

# Maximum length for stored error messages
MAX_ERROR_LENGTH = 5000

# Characters of review text hashed for duplicate detection
DEDUPE_PREFIX_LENGTH = 200

REVIEW_TERMS = ("good", "bad", "love", "hate", "recommend", "experience", "review", "rating")

STORE_PLATFORMS = (Platform.APP_STORE, Platform.GOOGLE_PLAY)


# =============================================================================
# CONFIGURATION AND RESULTS
# =============================================================================


@dataclass
class SchedulerConfig:
    """Batching, retry and retention settings for the scheduler."""

    reddit_batch_size: int = 50
    store_batch_size: int = 400
    batch_priority: int = 7
    max_retries: int = 3
    retry_base_delay_seconds: int = 60
    retry_max_delay_seconds: int = 300
    failure_ratio_threshold: float = 0.5

    review_max_age_days: int = 90
    review_min_length: int = 10
    review_max_length: int = 5000
    platform_quotas: dict[str, int] = field(
        default_factory=lambda: {
            Platform.REDDIT: 400,
            Platform.APP_STORE: 2000,
            Platform.GOOGLE_PLAY: 2000,
        }
    )

    stale_task_minutes: int = 10
    stuck_report_minutes: int = 60
    stale_queue_minutes: int = 30
    failed_task_retention_hours: int = 48
    monitoring_log_retention_days: int = 7

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SchedulerConfig":
        return cls(
            reddit_batch_size=settings.reddit_batch_size,
            store_batch_size=settings.store_batch_size,
            batch_priority=settings.batch_priority,
            max_retries=settings.task_max_retries,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            retry_max_delay_seconds=settings.retry_max_delay_seconds,
            failure_ratio_threshold=settings.failure_ratio_threshold,
            review_max_age_days=settings.review_max_age_days,
            review_min_length=settings.review_min_length,
            review_max_length=settings.review_max_length,
            platform_quotas={
                Platform.REDDIT: settings.reddit_review_quota,
                Platform.APP_STORE: settings.app_store_review_quota,
                Platform.GOOGLE_PLAY: settings.google_play_review_quota,
            },
            stale_task_minutes=settings.stale_task_minutes,
            stuck_report_minutes=settings.stuck_report_minutes,
            stale_queue_minutes=settings.stale_queue_minutes,
            failed_task_retention_hours=settings.failed_task_retention_hours,
            monitoring_log_retention_days=settings.monitoring_log_retention_days,
        )


@dataclass
class ScheduleResult:
    """Outcome of scheduling one report."""

    report_id: int
    status: str  # "scheduled", "skipped", "failed"
    total_batches: int = 0
    total_reviews: int = 0
    platform_counts: dict[str, int] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "status": self.status,
            "total_batches": self.total_batches,
            "total_reviews": self.total_reviews,
            "platform_counts": self.platform_counts,
            "message": self.message,
        }


@dataclass
class RetryDecision:
    """What happened to a task after a failure."""

    task_id: int
    retried: bool
    retry_count: int
    error_type: str
    delay_seconds: int = 0
    next_attempt_at: Optional[datetime] = None
    applied: bool = True

    @property
    def permanently_failed(self) -> bool:
        return self.applied and not self.retried


@dataclass
class ReportProgress:
    """Task counts for one report."""

    report_id: int
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    report_failed: bool = False

    @property
    def settled(self) -> bool:
        return self.total > 0 and self.pending == 0 and self.processing == 0

    @property
    def failure_ratio(self) -> float:
        return self.failed / self.total if self.total else 0.0

    @property
    def ready_for_completion(self) -> bool:
        return self.settled and self.completed > 0 and not self.report_failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "report_failed": self.report_failed,
        }


@dataclass
class DispatchResult:
    """Summary of one dispatch round."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    ready_report_ids: list[int] = field(default_factory=list)
    failed_report_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "ready_report_ids": self.ready_report_ids,
            "failed_report_ids": self.failed_report_ids,
        }


@dataclass
class RecoveryResult:
    """Summary of one recovery pass."""

    stale_tasks_retried: int = 0
    stale_tasks_failed: int = 0
    stale_queued_tasks: int = 0
    ready_report_ids: list[int] = field(default_factory=list)
    failed_report_ids: list[int] = field(default_factory=list)
    unscheduled_report_ids: list[int] = field(default_factory=list)
    stuck_completion_report_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale_tasks_retried": self.stale_tasks_retried,
            "stale_tasks_failed": self.stale_tasks_failed,
            "stale_queued_tasks": self.stale_queued_tasks,
            "ready_report_ids": self.ready_report_ids,
            "failed_report_ids": self.failed_report_ids,
            "unscheduled_report_ids": self.unscheduled_report_ids,
            "stuck_completion_report_ids": self.stuck_completion_report_ids,
        }


# =============================================================================
# REVIEW PREPARATION
# =============================================================================


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def review_to_dict(review: ScrapedReview) -> dict[str, Any]:
    """JSON-safe dict for a stored review, as kept in AnalysisTask.reviews_data."""
    return {
        "id": review.id,
        "platform": review.platform,
        "review_text": review.review_text,
        "rating": review.rating,
        "review_date": review.review_date.isoformat() if review.review_date else None,
        "author_name": review.author_name,
        "source_url": review.source_url,
        "metadata": review.metadata_json or {},
    }


def dedupe_reviews(reviews: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop reviews whose leading text repeats an earlier review."""
    seen: set[str] = set()
    unique = []
    for review in reviews:
        prefix = (review.get("review_text") or "")[:DEDUPE_PREFIX_LENGTH]
        digest = hashlib.sha1(prefix.encode("utf-8")).hexdigest()
        if digest in seen:
            continue
        seen.add(digest)
        unique.append(review)
    return unique


def score_review(review: dict[str, Any], app_name: str, now: datetime) -> float:
    """Quality score used to keep the most useful reviews per platform."""
    text = review.get("review_text") or ""
    lowered = text.lower()
    score = min(len(text) / 50, 20)

    rating = review.get("rating")
    if rating:
        score += rating * 2

    review_date = _parse_date(review.get("review_date"))
    if review_date is not None:
        days = (now - review_date).total_seconds() / 86400
        if days < 30:
            score += 10
        elif days < 90:
            score += 5
        elif days < 365:
            score += 2

    if app_name and app_name.lower() in lowered:
        score += 5
    score += sum(1 for term in REVIEW_TERMS if term in lowered)

    if review.get("platform") == Platform.REDDIT:
        metadata = review.get("metadata") or {}
        score += min((metadata.get("score") or 0) * 0.1, 10)
        score += min((metadata.get("comment_count") or 0) * 0.2, 5)

    return score


def select_reviews(
    reviews: Iterable[dict[str, Any]],
    app_name: str,
    config: SchedulerConfig,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Dedupe, filter by age and length, then keep the best per platform.

    Reviews without a date are kept. The result is grouped by platform
    in reddit, app_store, google_play order, best first within each.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=config.review_max_age_days)

    kept = []
    for review in dedupe_reviews(reviews):
        text = review.get("review_text") or ""
        if not config.review_min_length <= len(text) <= config.review_max_length:
            continue
        review_date = _parse_date(review.get("review_date"))
        if review_date is not None and review_date < cutoff:
            continue
        kept.append(review)

    selected = []
    for platform in (Platform.REDDIT, Platform.APP_STORE, Platform.GOOGLE_PLAY):
        platform_reviews = [r for r in kept if r.get("platform") == platform]
        platform_reviews.sort(key=lambda r: (-score_review(r, app_name, now), r.get("id") or 0))
        selected.extend(platform_reviews[: config.platform_quotas.get(platform, 0)])
    return selected


def partition_reviews(
    reviews: list[dict[str, Any]],
    reddit_batch_size: int,
    store_batch_size: int,
) -> list[list[dict[str, Any]]]:
    """Split reviews into platform-aware fixed-size batches.

    Reddit posts get their own smaller batches; App Store and Google
    Play reviews share larger store batches. Every review lands in
    exactly one batch.
    """
    reddit = [r for r in reviews if r.get("platform") == Platform.REDDIT]
    store = [r for r in reviews if r.get("platform") in STORE_PLATFORMS]

    batches = []
    for i in range(0, len(reddit), reddit_batch_size):
        batches.append(reddit[i : i + reddit_batch_size])
    for i in range(0, len(store), store_batch_size):
        batches.append(store[i : i + store_batch_size])
    return batches


def serialize_error(error: Union[str, BaseException], include_traceback: bool = False) -> str:
    """Error text suitable for storage, truncated if too long."""
    if isinstance(error, str):
        error_str = error
    elif include_traceback:
        error_str = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    else:
        error_str = f"{type(error).__name__}: {error}"

    if len(error_str) > MAX_ERROR_LENGTH:
        error_str = error_str[: MAX_ERROR_LENGTH - 3] + "..."
    return error_str


# =============================================================================
# SCHEDULER
# =============================================================================


class BatchScheduler:
    """Create, claim, retry and clean up analysis tasks."""

    def __init__(
        self,
        db: DBSession,
        config: Optional[SchedulerConfig] = None,
        sink: Optional[PipelineEventSink] = None,
    ):
        self.db = db
        self.config = config or SchedulerConfig()
        self.state = ReportStateService(db)
        self.sink = sink or PipelineEventSink(db)
        self.retry_policy = RetryPolicy(
            max_retries=self.config.max_retries,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
        )

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def load_reviews(self, report_id: int) -> tuple[Optional[ScrapingSession], list[dict[str, Any]]]:
        """Latest scraping session of a report and its stored reviews."""
        session = (
            self.db.query(ScrapingSession)
            .filter(ScrapingSession.report_id == report_id)
            .order_by(ScrapingSession.id.desc())
            .first()
        )
        if session is None:
            return None, []
        rows = (
            self.db.query(ScrapedReview)
            .filter(ScrapedReview.scraping_session_id == session.id)
            .order_by(ScrapedReview.id.asc())
            .all()
        )
        return session, [review_to_dict(r) for r in rows]

    def schedule_report(self, report_id: int, now: Optional[datetime] = None) -> ScheduleResult:
        """Move a report to analyzing and enqueue one task per batch.

        Only the caller that wins the ``scraping_completed -> analyzing``
        transition creates tasks, so repeated calls are harmless.

        Raises:
            ReportNotFoundError: If the report does not exist.
        """
        now = now or utcnow()
        report = self.state.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(report_id)

        if not self.state.transition(
            report_id,
            ReportStatus.SCRAPING_COMPLETED,
            ReportStatus.ANALYZING,
            analysis_started_at=now,
        ):
            current = self.state.get_report(report_id)
            return ScheduleResult(
                report_id=report_id,
                status="skipped",
                message=f"Report is {current.status if current else 'missing'}",
            )

        session, reviews = self.load_reviews(report_id)
        selected = select_reviews(reviews, report.app_name, self.config, now)
        batches = partition_reviews(
            selected,
            self.config.reddit_batch_size,
            self.config.store_batch_size,
        )

        platform_counts: dict[str, int] = {}
        for review in selected:
            platform_counts[review["platform"]] = platform_counts.get(review["platform"], 0) + 1

        if not batches:
            message = (
                f"No usable reviews were found for '{report.app_name}'. "
                f"Collected {len(reviews)} reviews but none passed filtering."
            )
            self.state.mark_failed(
                report_id,
                stage="scraping",
                message=message,
                details={
                    "total_reviews_found": len(reviews),
                    "suggestion": "Check the app name spelling or enable more review sources.",
                },
            )
            return ScheduleResult(report_id=report_id, status="failed", message=message)

        for index, batch in enumerate(batches):
            self.db.add(
                AnalysisTask(
                    report_id=report_id,
                    scraping_session_id=session.id if session else None,
                    batch_index=index,
                    priority=self.config.batch_priority,
                    reviews_data=batch,
                    status=AnalysisTaskStatus.PENDING,
                    retry_count=0,
                    max_retries=self.config.max_retries,
                )
            )
        self.db.flush()

        self.sink.metric(
            "analysis_batches_created",
            len(batches),
            "count",
            {"report_id": report_id, "reviews": len(selected)},
        )
        logger.info(
            f"Scheduled report {report_id}: {len(selected)} of {len(reviews)} reviews "
            f"in {len(batches)} batches {platform_counts}"
        )
        return ScheduleResult(
            report_id=report_id,
            status="scheduled",
            total_batches=len(batches),
            total_reviews=len(selected),
            platform_counts=platform_counts,
        )

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    def get_task(self, task_id: int) -> Optional[AnalysisTask]:
        return (
            self.db.query(AnalysisTask)
            .populate_existing()
            .filter(AnalysisTask.id == task_id)
            .first()
        )

    def claim_task(self, task_id: int, now: Optional[datetime] = None) -> bool:
        """Atomically move one task from pending to processing.

        Returns:
            True if this caller claimed the task.
        """
        now = now or utcnow()
        result = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.id == task_id,
                AnalysisTask.status == AnalysisTaskStatus.PENDING,
            )
            .update(
                {
                    AnalysisTask.status: AnalysisTaskStatus.PROCESSING,
                    AnalysisTask.started_at: now,
                    AnalysisTask.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.flush()
        return result > 0

    def claim_tasks(
        self,
        limit: int,
        report_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[AnalysisTask]:
        """Claim up to ``limit`` eligible pending tasks.

        Tasks are taken by priority, then report age, then batch index.
        Tasks whose backoff has not expired are skipped.
        """
        now = now or utcnow()
        query = self.db.query(AnalysisTask).filter(
            AnalysisTask.status == AnalysisTaskStatus.PENDING,
            or_(AnalysisTask.next_attempt_at.is_(None), AnalysisTask.next_attempt_at <= now),
        )
        if report_id is not None:
            query = query.filter(AnalysisTask.report_id == report_id)

        query = query.order_by(
            AnalysisTask.priority.desc(),
            AnalysisTask.report_id.asc(),
            AnalysisTask.batch_index.asc(),
        )

        claimed = []
        for task in query.limit(limit * 2).all():
            if len(claimed) >= limit:
                break
            if self.claim_task(task.id, now):
                self.db.refresh(task)
                claimed.append(task)
        return claimed

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def record_success(
        self,
        task_id: int,
        themes_data: dict[str, Any],
        duration_seconds: float,
        now: Optional[datetime] = None,
    ) -> bool:
        """Store a task's theme candidates and mark it completed.

        Returns:
            False if the task was no longer processing (for example it
            was reclaimed by stale-task recovery).
        """
        now = now or utcnow()
        result = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.id == task_id,
                AnalysisTask.status == AnalysisTaskStatus.PROCESSING,
            )
            .update(
                {
                    AnalysisTask.status: AnalysisTaskStatus.COMPLETED,
                    AnalysisTask.themes_data: themes_data,
                    AnalysisTask.completed_at: now,
                    AnalysisTask.processing_duration: duration_seconds,
                    AnalysisTask.error_message: None,
                    AnalysisTask.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.flush()
        return result > 0

    def record_failure(
        self,
        task_id: int,
        error: Union[str, BaseException],
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """Re-queue a failed task with backoff, or fail it permanently.

        The retry counter is incremented. Below the task's retry budget
        the task goes back to pending with a future ``next_attempt_at``;
        at the budget it is marked failed and a metric and alert are
        emitted.
        """
        now = now or utcnow()
        error_type = classify_error(error)
        error_str = serialize_error(error)

        task = self.get_task(task_id)
        if task is None or task.status != AnalysisTaskStatus.PROCESSING:
            logger.info(f"Ignoring failure for task {task_id}: not processing")
            return RetryDecision(
                task_id=task_id,
                retried=False,
                retry_count=task.retry_count if task else 0,
                error_type=error_type,
                applied=False,
            )

        failures = task.retry_count + 1
        details = {
            "error_type": error_type,
            "attempt": failures,
            "failed_at": now.isoformat(),
        }

        if self.retry_policy.should_retry(failures, task.max_retries):
            delay = self.retry_policy.delay_for(task.retry_count)
            next_attempt = now + timedelta(seconds=delay)
            values = {
                AnalysisTask.status: AnalysisTaskStatus.PENDING,
                AnalysisTask.retry_count: failures,
                AnalysisTask.next_attempt_at: next_attempt,
                AnalysisTask.error_message: error_str,
                AnalysisTask.error_details: details,
                AnalysisTask.started_at: None,
                AnalysisTask.updated_at: now,
            }
            decision = RetryDecision(
                task_id=task_id,
                retried=True,
                retry_count=failures,
                error_type=error_type,
                delay_seconds=delay,
                next_attempt_at=next_attempt,
            )
        else:
            values = {
                AnalysisTask.status: AnalysisTaskStatus.FAILED,
                AnalysisTask.retry_count: failures,
                AnalysisTask.error_message: error_str,
                AnalysisTask.error_details: details,
                AnalysisTask.completed_at: now,
                AnalysisTask.updated_at: now,
            }
            decision = RetryDecision(
                task_id=task_id,
                retried=False,
                retry_count=failures,
                error_type=error_type,
            )

        result = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.id == task_id,
                AnalysisTask.status == AnalysisTaskStatus.PROCESSING,
            )
            .update(values, synchronize_session=False)
        )
        self.db.flush()

        if result == 0:
            decision.applied = False
            return decision

        if decision.retried:
            logger.info(
                f"Task {task_id} failed ({error_type}), retry {failures}/{task.max_retries} "
                f"in {decision.delay_seconds}s"
            )
        else:
            logger.warning(f"Task {task_id} failed permanently after {failures} attempts: {error_str}")
            self.sink.metric(
                "batch_processing_failures",
                1,
                "count",
                {"task_id": task_id, "report_id": task.report_id, "error_type": error_type},
            )
            self.sink.alert(
                "batch_processing_failure",
                AlertSeverity.ERROR,
                f"Batch task {task_id} failed permanently after {failures} attempts",
                {"task_id": task_id, "report_id": task.report_id, "error": error_str},
            )
        return decision

    # -------------------------------------------------------------------------
    # Report progress
    # -------------------------------------------------------------------------

    def get_progress(self, report_id: int) -> ReportProgress:
        """Task counts per status for a report."""
        rows = (
            self.db.query(AnalysisTask.status, func.count(AnalysisTask.id))
            .filter(AnalysisTask.report_id == report_id)
            .group_by(AnalysisTask.status)
            .all()
        )
        progress = ReportProgress(report_id=report_id)
        for status, count in rows:
            setattr(progress, status, int(count))
            progress.total += int(count)
        return progress

    def evaluate_report(self, report_id: int) -> ReportProgress:
        """Fail the report if too many of its tasks failed permanently.

        Returns:
            The report's progress; ``ready_for_completion`` tells the
            caller to run the completion coordinator.
        """
        progress = self.get_progress(report_id)
        if progress.total == 0:
            return progress

        if progress.failure_ratio > self.config.failure_ratio_threshold:
            message = (
                f"{progress.failed} of {progress.total} analysis batches failed "
                f"(threshold {self.config.failure_ratio_threshold:.0%})"
            )
            if self.state.mark_failed(
                report_id,
                stage="analysis",
                message=message,
                details=progress.to_dict(),
            ):
                self.sink.alert(
                    "report_failure",
                    AlertSeverity.CRITICAL,
                    f"Report {report_id} failed: {message}",
                    progress.to_dict(),
                )
            progress.report_failed = True
        return progress

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        worker: "BatchWorker",
        limit: int,
        max_concurrency: int,
        report_id: Optional[int] = None,
    ) -> DispatchResult:
        """Claim up to ``limit`` tasks and process them concurrently.

        All tasks settle; one task raising does not cancel its siblings.
        Each task's outcome is committed as soon as it settles.
        Reports whose tasks are all settled are evaluated afterwards.
        """
        tasks = self.claim_tasks(limit, report_id=report_id)
        result = DispatchResult(claimed=len(tasks))
        if not tasks:
            return result
        # Claims are committed before any extraction call starts
        self.db.commit()

        semaphore = asyncio.Semaphore(max_concurrency)

        # Outcomes are committed per task; a rollback discards only the
        # failing task's own writes
        async def run(task: AnalysisTask) -> "BatchOutcome":
            async with semaphore:
                try:
                    outcome = await worker.process_task(task)
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
                return outcome

        outcomes = await asyncio.gather(*(run(t) for t in tasks), return_exceptions=True)

        report_ids = []
        for task, outcome in zip(tasks, outcomes):
            if task.report_id not in report_ids:
                report_ids.append(task.report_id)
            if isinstance(outcome, BaseException):
                logger.error(f"Task {task.id} raised outside the worker: {outcome}")
                self.record_failure(task.id, outcome)
                self.db.commit()
                result.failed += 1
            elif outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1

        for rid in report_ids:
            progress = self.evaluate_report(rid)
            if progress.report_failed:
                result.failed_report_ids.append(rid)
            elif progress.ready_for_completion:
                result.ready_report_ids.append(rid)
        return result

    # -------------------------------------------------------------------------
    # Recovery and cleanup
    # -------------------------------------------------------------------------

    def recover_stale_tasks(self, now: Optional[datetime] = None) -> RecoveryResult:
        """Repair work abandoned by crashed or hung workers.

        - Tasks processing longer than ``stale_task_minutes`` are failed
          through the normal retry path.
        - Reports stuck in analyzing are re-evaluated.
        - Reports left in scraping_completed are returned for scheduling.
        - Reports stuck in completing are returned for completion.
        - A warning alert is raised when tasks wait too long in the queue.
        """
        now = now or utcnow()
        result = RecoveryResult()

        stale_cutoff = now - timedelta(minutes=self.config.stale_task_minutes)
        stale_tasks = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.status == AnalysisTaskStatus.PROCESSING,
                AnalysisTask.started_at < stale_cutoff,
            )
            .order_by(AnalysisTask.id.asc())
            .all()
        )
        touched_reports: list[int] = []
        for task in stale_tasks:
            decision = self.record_failure(
                task.id,
                ExtractionTimeoutError(
                    f"Task stuck in processing for more than {self.config.stale_task_minutes} minutes"
                ),
                now,
            )
            if not decision.applied:
                continue
            if decision.retried:
                result.stale_tasks_retried += 1
            else:
                result.stale_tasks_failed += 1
            if task.report_id not in touched_reports:
                touched_reports.append(task.report_id)

        stuck_cutoff = now - timedelta(minutes=self.config.stuck_report_minutes)
        for report in self.state.list_reports(ReportStatus.ANALYZING, updated_before=stuck_cutoff):
            if report.id not in touched_reports:
                touched_reports.append(report.id)

        for rid in touched_reports:
            progress = self.evaluate_report(rid)
            if progress.report_failed:
                result.failed_report_ids.append(rid)
            elif progress.ready_for_completion:
                result.ready_report_ids.append(rid)
            elif progress.total == 0:
                self.state.mark_failed(rid, stage="analysis", message="Report has no analysis tasks")
                result.failed_report_ids.append(rid)

        schedule_cutoff = now - timedelta(minutes=1)
        result.unscheduled_report_ids = [
            r.id for r in self.state.list_reports(ReportStatus.SCRAPING_COMPLETED, updated_before=schedule_cutoff)
        ]
        result.stuck_completion_report_ids = [
            r.id for r in self.state.list_reports(ReportStatus.COMPLETING, updated_before=stuck_cutoff)
        ]

        queue_cutoff = now - timedelta(minutes=self.config.stale_queue_minutes)
        result.stale_queued_tasks = (
            self.db.query(AnalysisTask)
            .filter(
                AnalysisTask.status == AnalysisTaskStatus.PENDING,
                AnalysisTask.created_at < queue_cutoff,
                or_(AnalysisTask.next_attempt_at.is_(None), AnalysisTask.next_attempt_at <= now),
            )
            .count()
        )
        if result.stale_queued_tasks:
            self.sink.alert(
                "stale_tasks",
                AlertSeverity.WARNING,
                f"{result.stale_queued_tasks} analysis tasks waiting more than "
                f"{self.config.stale_queue_minutes} minutes",
                {"count": result.stale_queued_tasks},
            )

        return result

    def cleanup(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Delete expired failed tasks and monitoring rows.

        Returns:
            Number of rows deleted per table.
        """
        now = now or utcnow()
        task_cutoff = now - timedelta(hours=self.config.failed_task_retention_hours)
        log_cutoff = now - timedelta(days=self.config.monitoring_log_retention_days)

        deleted = {
            "analysis_tasks": (
                self.db.query(AnalysisTask)
                .filter(
                    AnalysisTask.status == AnalysisTaskStatus.FAILED,
                    AnalysisTask.updated_at < task_cutoff,
                )
                .delete(synchronize_session=False)
            ),
            "system_metrics": (
                self.db.query(SystemMetric)
                .filter(SystemMetric.recorded_at < log_cutoff)
                .delete(synchronize_session=False)
            ),
            "alert_logs": (
                self.db.query(AlertLog)
                .filter(AlertLog.created_at < log_cutoff)
                .delete(synchronize_session=False)
            ),
            "cron_execution_log": (
                self.db.query(CronExecutionLog)
                .filter(CronExecutionLog.executed_at < log_cutoff)
                .delete(synchronize_session=False)
            ),
        }
        self.db.flush()
        logger.info(f"Cleanup deleted {deleted}")
        return deleted
