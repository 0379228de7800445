"""Retry policy for analysis tasks.

Failures are classified so operators can tell rate limiting from
timeouts or bad model output. Every class is retried with the same
capped exponential backoff.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Union

from reviewpulse_core.domain.errors import (
    ExtractionTimeoutError,
    ThemeParseError,
)
from reviewpulse_core.domain.services.inference import (
    ConnectionInferenceError,
    RateLimitInferenceError,
    TimeoutInferenceError,
)


class ErrorType(str):
    """Failure classes for analysis tasks."""

    TIMEOUT = "timeout"
    API_LIMIT = "api_limit"
    NETWORK_ERROR = "network_error"
    DATA_ERROR = "data_error"
    UNKNOWN = "unknown"


_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (ErrorType.TIMEOUT, ("timeout", "timed out", "deadline")),
    (ErrorType.API_LIMIT, ("rate limit", "429", "quota", "too many requests")),
    (ErrorType.NETWORK_ERROR, ("connection", "network", "unreachable", "dns", "reset by peer")),
    (ErrorType.DATA_ERROR, ("json", "parse", "invalid", "malformed", "validation")),
]


def classify_error(error: Union[str, BaseException]) -> str:
    """Map an exception or error message to an ErrorType value."""
    if isinstance(error, BaseException):
        chain = [error]
        if error.__cause__ is not None:
            chain.append(error.__cause__)
        for exc in chain:
            if isinstance(exc, (ExtractionTimeoutError, TimeoutInferenceError, asyncio.TimeoutError)):
                return ErrorType.TIMEOUT
            if isinstance(exc, RateLimitInferenceError):
                return ErrorType.API_LIMIT
            if isinstance(exc, ConnectionInferenceError):
                return ErrorType.NETWORK_ERROR
            if isinstance(exc, ThemeParseError):
                return ErrorType.DATA_ERROR
        message = str(error)
    else:
        message = error

    lowered = message.lower()
    for error_type, keywords in _KEYWORDS:
        if any(k in lowered for k in keywords):
            return error_type
    return ErrorType.UNKNOWN


@dataclass
class RetryPolicy:
    """Capped exponential backoff: ``min(2**retry_count * base, max)``."""

    max_retries: int = 3
    base_delay_seconds: int = 60
    max_delay_seconds: int = 300

    def delay_for(self, retry_count: int) -> int:
        """Backoff before the next attempt, given retries already used."""
        delay = (2 ** max(retry_count, 0)) * self.base_delay_seconds
        return int(min(delay, self.max_delay_seconds))

    def should_retry(self, failures: int, max_retries: Optional[int] = None) -> bool:
        """Whether a task that has failed ``failures`` times gets another attempt."""
        limit = self.max_retries if max_retries is None else max_retries
        return failures < limit
