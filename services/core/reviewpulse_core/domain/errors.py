"""Exceptions raised by the report-processing pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class ReportNotFoundError(PipelineError):
    """The referenced report does not exist."""

    def __init__(self, report_id: int):
        super().__init__(f"Report not found: {report_id}")
        self.report_id = report_id


class InvalidTransitionError(PipelineError):
    """A status change that is not an edge of the report state graph."""

    def __init__(self, current: str, new: str):
        super().__init__(f"Invalid report transition: {current} -> {new}")
        self.current = current
        self.new = new


class TransientCompletionError(PipelineError):
    """The completion claim raced unexpectedly and may be retried."""

    pass


class NoCompletedTasksError(PipelineError):
    """A report reached completion without any completed analysis task."""

    pass


class ThemeExtractionError(PipelineError):
    """The theme-extraction collaborator failed for a batch partition."""

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.platform = platform


class ThemeParseError(ThemeExtractionError):
    """The collaborator returned output that is not a valid theme list."""

    pass


class ExtractionTimeoutError(ThemeExtractionError):
    """The collaborator did not answer within the per-call timeout."""

    pass
