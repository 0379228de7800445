"""Observability package for logging, metrics and the event sink."""

from reviewpulse_core.observability.logging import (
    JsonFormatter,
    PipelineContext,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from reviewpulse_core.observability.metrics import (
    MetricsCollector,
    QueueMetrics,
    get_collector,
)
from reviewpulse_core.observability.sink import PipelineEventSink

__all__ = [
    "JsonFormatter",
    "PipelineContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "MetricsCollector",
    "QueueMetrics",
    "get_collector",
    "PipelineEventSink",
]
