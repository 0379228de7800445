"""Domain services for ReviewPulse."""

from reviewpulse_core.domain.services.batch_scheduler import BatchScheduler, SchedulerConfig
from reviewpulse_core.domain.services.batch_worker import BatchWorker, WorkerConfig
from reviewpulse_core.domain.services.report_completion import ReportCompletionCoordinator
from reviewpulse_core.domain.services.report_state import CompletionClaim, ReportStateService
from reviewpulse_core.domain.services.scraping_monitor import (
    ScrapingCompletionMonitor,
    ScrapingSessionService,
)
from reviewpulse_core.domain.services.theme_consolidation import (
    ThemeConsolidationEngine,
    consolidate_themes,
)
from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

__all__ = [
    "BatchScheduler",
    "SchedulerConfig",
    "BatchWorker",
    "WorkerConfig",
    "ReportCompletionCoordinator",
    "CompletionClaim",
    "ReportStateService",
    "ScrapingCompletionMonitor",
    "ScrapingSessionService",
    "ThemeConsolidationEngine",
    "consolidate_themes",
    "ThemeExtractor",
]
