"""Unit tests for error classification and retry backoff."""

import asyncio

import pytest


class TestClassifyError:
    """Tests for classify_error."""

    def test_by_exception_type(self):
        """Known exception types map directly to their class."""
        from reviewpulse_core.domain.errors import ExtractionTimeoutError, ThemeParseError
        from reviewpulse_core.domain.services.retry_policy import classify_error

        assert classify_error(asyncio.TimeoutError()) == "timeout"
        assert classify_error(ExtractionTimeoutError("slow")) == "timeout"
        assert classify_error(ThemeParseError("bad")) == "data_error"

    def test_inference_errors(self):
        """Inference client errors are classified by type."""
        from reviewpulse_core.domain.services.inference import (
            ConnectionInferenceError,
            RateLimitInferenceError,
        )
        from reviewpulse_core.domain.services.retry_policy import classify_error

        assert classify_error(RateLimitInferenceError("slow down")) == "api_limit"
        assert classify_error(ConnectionInferenceError("refused")) == "network_error"

    def test_follows_cause(self):
        """A wrapping error is classified by its cause."""
        from reviewpulse_core.domain.errors import ThemeExtractionError
        from reviewpulse_core.domain.services.inference import ConnectionInferenceError
        from reviewpulse_core.domain.services.retry_policy import classify_error

        try:
            try:
                raise ConnectionInferenceError("refused")
            except ConnectionInferenceError as e:
                raise ThemeExtractionError("extraction failed") from e
        except ThemeExtractionError as wrapped:
            assert classify_error(wrapped) == "network_error"

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request timed out after 180s", "timeout"),
            ("HTTP 429 Too Many Requests", "api_limit"),
            ("Connection reset by peer", "network_error"),
            ("Invalid JSON in response", "data_error"),
            ("Something odd happened", "unknown"),
        ],
    )
    def test_by_message(self, message, expected):
        """Plain messages and unknown exceptions fall back to keywords."""
        from reviewpulse_core.domain.services.retry_policy import classify_error

        assert classify_error(message) == expected
        assert classify_error(RuntimeError(message)) == expected


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.mark.parametrize("retry_count,delay", [(0, 60), (1, 120), (2, 240), (3, 300), (8, 300)])
    def test_delay_doubles_up_to_cap(self, retry_count, delay):
        """Backoff is min(2**n * 60, 300) seconds."""
        from reviewpulse_core.domain.services.retry_policy import RetryPolicy

        assert RetryPolicy().delay_for(retry_count) == delay

    def test_negative_retry_count_uses_base(self):
        """A negative count is treated as the first retry."""
        from reviewpulse_core.domain.services.retry_policy import RetryPolicy

        assert RetryPolicy(base_delay_seconds=10).delay_for(-1) == 10

    def test_should_retry(self):
        """Tasks get another attempt until failures reach the limit."""
        from reviewpulse_core.domain.services.retry_policy import RetryPolicy

        policy = RetryPolicy(max_retries=3)

        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False
        assert policy.should_retry(3, max_retries=5) is True
