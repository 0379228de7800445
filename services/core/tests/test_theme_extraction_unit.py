"""Unit tests for theme extraction.

Tests cover:
- Review text preparation
- Prompt construction
- Parsing of model answers
- The extractor's error mapping
"""

import json
from unittest.mock import AsyncMock

import pytest

from reviewpulse_core.domain.services.inference import ChatResponse, ModelInfo


def _response(content: str, finish_reason: str = "stop") -> ChatResponse:
    return ChatResponse(
        content=content,
        model_info=ModelInfo(
            model_name="test-model",
            temperature=0.3,
            max_tokens=4000,
            input_tokens=100,
            output_tokens=50,
            latency_ms=12,
        ),
        finish_reason=finish_reason,
    )


THEMES_JSON = json.dumps(
    {
        "themes": [
            {
                "title": "Login failures",
                "description": "Sign in breaks after updates.",
                "quotes": ["Cannot log in since yesterday", "Login spins forever", "Error 500", "Fourth"],
                "suggestions": ["Fix login"],
            },
            {"title": "", "description": "untitled"},
        ]
    }
)


class TestPrepareReviewTexts:
    """Tests for prepare_review_texts."""

    def test_short_reviews_dropped_and_long_truncated(self):
        """Very short texts go; long ones are cut with an ellipsis."""
        from reviewpulse_core.domain.services.theme_extraction import (
            ExtractionConfig,
            prepare_review_texts,
        )

        config = ExtractionConfig(review_max_chars=20)
        texts = prepare_review_texts(["ok", "  fine app  ", "x" * 50], config)

        assert texts == ["x" * 20 + "..."]

    def test_count_is_capped(self):
        """No more than max_reviews texts are sent."""
        from reviewpulse_core.domain.services.theme_extraction import (
            ExtractionConfig,
            prepare_review_texts,
        )

        texts = prepare_review_texts([f"review text number {i}" for i in range(10)], ExtractionConfig(max_reviews=3))

        assert len(texts) == 3

    def test_cap_logs_dropped_reviews(self, caplog):
        """Reviews over the per-call limit are reported, not dropped silently."""
        import logging

        from reviewpulse_core.domain.services.theme_extraction import (
            ExtractionConfig,
            prepare_review_texts,
        )

        with caplog.at_level(logging.WARNING, logger="reviewpulse_core.domain.services.theme_extraction"):
            prepare_review_texts([f"review text number {i}" for i in range(10)], ExtractionConfig(max_reviews=3))

        assert "Dropping 7 of 10 reviews" in caplog.text

    def test_review_at_minimum_length_is_kept(self):
        """A review exactly min_review_chars long is used, matching review selection."""
        from reviewpulse_core.domain.services.theme_extraction import (
            ExtractionConfig,
            prepare_review_texts,
        )

        texts = prepare_review_texts(["Great app!", "Too short"], ExtractionConfig(min_review_chars=10))

        assert texts == ["Great app!"]


class TestBuildMessages:
    """Tests for build_extraction_messages."""

    def test_prompt_mentions_app_platform_and_reviews(self):
        """The user prompt carries the app, platform context and reviews."""
        from reviewpulse_core.domain.services.theme_extraction import build_extraction_messages

        messages = build_extraction_messages("Notely", "reddit", ["Sync broke again"], batch_index=4)

        assert [m.role for m in messages] == ["system", "user"]
        assert '"Notely"' in messages[1].content
        assert "Reddit posts" in messages[1].content
        assert "Batch 4 reviews (1 reviews)" in messages[1].content
        assert "Sync broke again" in messages[1].content


class TestParseThemeResponse:
    """Tests for parse_theme_response."""

    def test_plain_json(self):
        """A themes object is parsed and untitled themes are dropped."""
        from reviewpulse_core.domain.services.theme_extraction import parse_theme_response

        result = parse_theme_response(THEMES_JSON, platform="app_store")

        assert result.ok
        assert [c.title for c in result.candidates] == ["Login failures"]
        assert result.candidates[0].platform == "app_store"
        assert len(result.candidates[0].quotes) == 3

    def test_code_fence_and_think_block(self):
        """Reasoning blocks and markdown fences are stripped."""
        from reviewpulse_core.domain.services.theme_extraction import parse_theme_response

        content = f"<think>let me look at these reviews</think>\n```json\n{THEMES_JSON}\n```"

        result = parse_theme_response(content)

        assert result.ok
        assert result.candidates[0].title == "Login failures"

    def test_bare_list(self):
        """A bare list of themes is accepted."""
        from reviewpulse_core.domain.services.theme_extraction import parse_theme_response

        result = parse_theme_response('[{"title": "Dark mode", "quotes": "Need dark mode"}]')

        assert result.ok
        assert result.candidates[0].quotes == ["Need dark mode"]

    def test_json_surrounded_by_prose(self):
        """The outermost object is extracted from surrounding text."""
        from reviewpulse_core.domain.services.theme_extraction import parse_theme_response

        result = parse_theme_response(f"Here are the themes: {THEMES_JSON} Hope this helps.")

        assert result.ok

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "I could not find any themes.",
            '{"themes": "none"}',
            '{"summary": []}',
            '{"themes": [{"title": "Broken", "quotes": [1, 2}',
        ],
    )
    def test_invalid_answers(self, content):
        """Non-conforming answers produce a parse error instead of raising."""
        from reviewpulse_core.domain.services.theme_extraction import parse_theme_response

        result = parse_theme_response(content)

        assert not result.ok
        assert result.candidates == []


class TestThemeExtractor:
    """Tests for ThemeExtractor.extract."""

    @pytest.mark.asyncio
    async def test_extract_returns_candidates(self):
        """A valid answer yields candidates tagged with the platform."""
        from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

        client = AsyncMock()
        client.chat.return_value = _response(THEMES_JSON)

        candidates = await ThemeExtractor(client).extract("Notely", "google_play", ["Cannot log in since yesterday"])

        assert [c.platform for c in candidates] == ["google_play"]
        assert client.chat.await_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_no_usable_reviews_skips_the_call(self):
        """Nothing is sent when every review is too short."""
        from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

        client = AsyncMock()

        assert await ThemeExtractor(client).extract("Notely", "reddit", ["ok", ""]) == []
        client.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_unparseable_answer_raises_parse_error(self):
        """A bad answer raises ThemeParseError for the retry queue."""
        from reviewpulse_core.domain.errors import ThemeParseError
        from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

        client = AsyncMock()
        client.chat.return_value = _response("Sorry, I cannot help", finish_reason="length")

        with pytest.raises(ThemeParseError) as exc_info:
            await ThemeExtractor(client).extract("Notely", "reddit", ["Sync broke again today"])

        assert exc_info.value.platform == "reddit"

    @pytest.mark.asyncio
    async def test_inference_timeout_maps_to_extraction_timeout(self):
        """Inference timeouts surface as ExtractionTimeoutError."""
        from reviewpulse_core.domain.errors import ExtractionTimeoutError
        from reviewpulse_core.domain.services.inference import TimeoutInferenceError
        from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

        client = AsyncMock()
        client.chat.side_effect = TimeoutInferenceError("Timeout error: read timed out")

        with pytest.raises(ExtractionTimeoutError):
            await ThemeExtractor(client).extract("Notely", "reddit", ["Sync broke again today"])

    @pytest.mark.asyncio
    async def test_other_inference_errors_keep_their_cause(self):
        """Other inference failures are wrapped with the original as cause."""
        from reviewpulse_core.domain.errors import ThemeExtractionError
        from reviewpulse_core.domain.services.inference import RateLimitInferenceError
        from reviewpulse_core.domain.services.retry_policy import classify_error
        from reviewpulse_core.domain.services.theme_extraction import ThemeExtractor

        client = AsyncMock()
        client.chat.side_effect = RateLimitInferenceError("Rate limited")

        with pytest.raises(ThemeExtractionError) as exc_info:
            await ThemeExtractor(client).extract("Notely", "reddit", ["Sync broke again today"])

        assert isinstance(exc_info.value.__cause__, RateLimitInferenceError)
        assert classify_error(exc_info.value) == "api_limit"
