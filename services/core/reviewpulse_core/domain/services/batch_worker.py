"""Batch worker: theme extraction for one analysis task.

The worker splits a task's review slice by platform and asks the
extraction model for themes on every non-empty partition concurrently.
Partitions larger than the per-call review limit are split across
several calls. A failing call fails only its own task, which goes back through
the scheduler's retry queue; sibling tasks are unaffected.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session as DBSession

from reviewpulse_core.domain.errors import ExtractionTimeoutError
from reviewpulse_core.domain.models import AnalysisTask, Platform, Report
from reviewpulse_core.domain.schemas.themes import ThemeCandidate
from reviewpulse_core.domain.services.batch_scheduler import BatchScheduler, RetryDecision
from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor
from reviewpulse_core.observability.logging import PipelineContext, get_logger

logger = get_logger(__name__)

PLATFORM_ORDER = (Platform.REDDIT, Platform.APP_STORE, Platform.GOOGLE_PLAY)


@dataclass
class WorkerConfig:
    """Per-call limits for extraction."""

    extraction_timeout_seconds: float = 180.0
    # Larger platform partitions are split across several calls
    max_reviews_per_call: int = 250


@dataclass
class BatchOutcome:
    """Result of processing one analysis task."""

    task_id: int
    report_id: int
    success: bool
    theme_count: int = 0
    review_count: int = 0
    duration_seconds: float = 0.0
    platform_counts: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    retry: Optional[RetryDecision] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "report_id": self.report_id,
            "success": self.success,
            "theme_count": self.theme_count,
            "review_count": self.review_count,
            "duration_seconds": round(self.duration_seconds, 3),
            "platform_counts": self.platform_counts,
            "error": self.error,
            "retried": self.retry.retried if self.retry else None,
        }


def partition_by_platform(reviews: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Review texts of a batch keyed by platform, in a fixed platform order."""
    partitions: dict[str, list[str]] = {}
    for platform in PLATFORM_ORDER:
        texts = [
            r.get("review_text") or ""
            for r in reviews
            if r.get("platform") == platform and (r.get("review_text") or "").strip()
        ]
        if texts:
            partitions[platform] = texts
    return partitions


def split_partitions(partitions: dict[str, list[str]], max_reviews: int) -> list[tuple[str, list[str]]]:
    """One (platform, texts) pair per extraction call, at most ``max_reviews`` texts each."""
    size = max(max_reviews, 1)
    return [
        (platform, texts[start : start + size])
        for platform, texts in partitions.items()
        for start in range(0, len(texts), size)
    ]


class BatchWorker:
    """Run theme extraction for claimed analysis tasks."""

    def __init__(
        self,
        db: DBSession,
        extractor: ThemeExtractor,
        scheduler: BatchScheduler,
        config: Optional[WorkerConfig] = None,
    ):
        self.db = db
        self.extractor = extractor
        self.scheduler = scheduler
        self.config = config or WorkerConfig()

    async def _extract_partition(
        self,
        app_name: str,
        platform: str,
        texts: list[str],
        batch_index: int,
    ) -> list[ThemeCandidate]:
        try:
            return await asyncio.wait_for(
                self.extractor.extract(app_name, platform, texts, batch_index),
                timeout=self.config.extraction_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionTimeoutError(
                f"Extraction for {platform} timed out after {self.config.extraction_timeout_seconds}s",
                platform=platform,
            ) from e

    async def process_task(self, task: AnalysisTask) -> BatchOutcome:
        """Extract themes for a task that is already claimed (processing).

        On success the platform-partitioned candidates are stored on the
        task. On any partition failure the task is handed to the retry
        queue and the outcome reports the failure; nothing is raised.
        """
        context = PipelineContext(
            report_id=task.report_id,
            task_id=task.id,
            stage="analysis",
            extra={"batch_index": task.batch_index},
        )
        started = time.monotonic()
        outcome = BatchOutcome(task_id=task.id, report_id=task.report_id, success=False)

        report = self.db.get(Report, task.report_id)
        app_name = report.app_name if report else ""
        reviews = task.reviews_data or []
        partitions = partition_by_platform(reviews)
        outcome.review_count = sum(len(t) for t in partitions.values())

        logger.info(
            f"Processing batch {task.batch_index} with {outcome.review_count} reviews",
            context,
            platforms=list(partitions),
        )

        calls = split_partitions(partitions, self.config.max_reviews_per_call)
        for platform in partitions:
            chunks = sum(1 for p, _ in calls if p == platform)
            if chunks > 1:
                logger.info(
                    f"Splitting {len(partitions[platform])} {platform} reviews "
                    f"into {chunks} extraction calls",
                    context.with_platform(platform),
                )

        results = await asyncio.gather(
            *(
                self._extract_partition(app_name, platform, texts, task.batch_index)
                for platform, texts in calls
            ),
            return_exceptions=True,
        )

        themes: dict[str, list[dict[str, Any]]] = {}
        failure: Optional[BaseException] = None
        for (platform, _), result in zip(calls, results):
            if isinstance(result, BaseException):
                logger.warning(
                    f"Extraction failed for {platform}: {result}",
                    context.with_platform(platform),
                )
                if failure is None:
                    failure = result
                continue
            themes.setdefault(platform, []).extend(
                c.model_copy(update={"platform": platform}).model_dump() for c in result
            )
            outcome.platform_counts[platform] = outcome.platform_counts.get(platform, 0) + len(result)

        outcome.duration_seconds = time.monotonic() - started

        if failure is not None:
            if not isinstance(failure, Exception):
                raise failure
            outcome.error = str(failure)
            outcome.retry = self.scheduler.record_failure(task.id, failure)
            logger.warning(
                f"Batch {task.batch_index} failed: {failure}",
                context,
                retried=outcome.retry.retried,
            )
            return outcome

        outcome.theme_count = sum(len(v) for v in themes.values())
        themes_data = {
            "platforms": themes,
            "theme_count": outcome.theme_count,
            "review_count": outcome.review_count,
        }
        if not self.scheduler.record_success(task.id, themes_data, outcome.duration_seconds):
            outcome.error = "Task was no longer processing when results were saved"
            logger.warning(outcome.error, context)
            return outcome

        outcome.success = True
        self.scheduler.sink.metric(
            "batch_processing_time",
            outcome.duration_seconds,
            "seconds",
            {"task_id": task.id, "report_id": task.report_id, "themes": outcome.theme_count},
        )
        logger.info(
            f"Batch {task.batch_index} produced {outcome.theme_count} themes "
            f"in {outcome.duration_seconds:.1f}s",
            context,
        )
        return outcome


def candidates_from_task(themes_data: Optional[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    """Platform-keyed candidate lists stored on a completed task."""
    if not themes_data:
        return {}
    platforms = themes_data.get("platforms")
    if not isinstance(platforms, dict):
        return {}
    return {
        platform: [c for c in candidates if isinstance(c, dict)]
        for platform, candidates in platforms.items()
        if isinstance(candidates, list)
    }


__all__ = [
    "BatchOutcome",
    "BatchWorker",
    "WorkerConfig",
    "candidates_from_task",
    "partition_by_platform",
    "split_partitions",
]
