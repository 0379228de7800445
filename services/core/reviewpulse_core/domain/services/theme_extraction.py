"""Theme extraction through the inference model.

This is the boundary to the one fallible external dependency of the
pipeline. It builds a platform-tailored prompt for a slice of reviews,
calls the model, and parses the free-text answer into validated
ThemeCandidate models. Any non-conforming answer is raised as a
ThemeParseError so the batch can be retried.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from reviewpulse_core.domain.errors import (
    ExtractionTimeoutError,
    ThemeExtractionError,
    ThemeParseError,
)
from reviewpulse_core.domain.schemas.themes import ExtractionResponse, ThemeCandidate
from reviewpulse_core.domain.services.inference import (
    ChatMessage,
    InferenceClient,
    InferenceError,
    TimeoutInferenceError,
)

logger = logging.getLogger(__name__)


PLATFORM_CONTEXT = {
    "app_store": (
        "These are App Store reviews from iOS users. Ratings accompany most "
        "reviews; pay attention to update regressions and device-specific issues."
    ),
    "google_play": (
        "These are Google Play reviews from Android users. Watch for device "
        "fragmentation, permissions, and performance on low-end hardware."
    ),
    "reddit": (
        "These are Reddit posts and comments. They are conversational and "
        "often compare the app with competitors; extract product feedback only."
    ),
}

SYSTEM_PROMPT = (
    "You are a product analyst. You read user reviews and identify the "
    "recurring product-feedback themes. You answer with JSON only."
)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


@dataclass
class ExtractionConfig:
    """Limits applied to each extraction request."""

    max_reviews: int = 250
    review_max_chars: int = 400
    min_review_chars: int = 10
    max_quotes_per_theme: int = 3
    max_suggestions_per_theme: int = 3
    temperature: float = 0.3
    max_tokens: int = 4000


@dataclass
class ThemeParseResult:
    """Outcome of parsing one model answer."""

    candidates: list[ThemeCandidate] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def prepare_review_texts(texts: list[str], config: ExtractionConfig) -> list[str]:
    """Drop very short reviews, truncate long ones and cap the count."""
    prepared = []
    for text in texts:
        stripped = (text or "").strip()
        if len(stripped) < config.min_review_chars:
            continue
        if len(stripped) > config.review_max_chars:
            stripped = stripped[: config.review_max_chars] + "..."
        prepared.append(stripped)

    if len(prepared) > config.max_reviews:
        logger.warning(
            f"Dropping {len(prepared) - config.max_reviews} of {len(prepared)} reviews "
            f"over the {config.max_reviews} per-call limit"
        )
        prepared = prepared[: config.max_reviews]
    return prepared


def build_extraction_messages(
    app_name: str,
    platform: str,
    review_texts: list[str],
    batch_index: Optional[int] = None,
) -> list[ChatMessage]:
    """Build the chat messages for one platform partition."""
    context = PLATFORM_CONTEXT.get(platform, "These are user reviews.")
    batch_label = f"Batch {batch_index} reviews" if batch_index is not None else "Reviews"
    joined = "\n\n".join(review_texts)

    user_prompt = f"""Analyze user reviews for "{app_name}". Identify 8-10 key themes with high relevance.

{context}

{batch_label} ({len(review_texts)} reviews):
{joined}

Return exactly this JSON structure:
{{
  "themes": [
    {{
      "title": "Theme Title",
      "description": "Detailed description of the theme",
      "quotes": ["verbatim excerpt from a review", "another verbatim excerpt"],
      "suggestions": ["improvement suggestion 1", "improvement suggestion 2"]
    }}
  ]
}}

Quotes must be copied word for word from the reviews above.
Focus on user experience issues and positive feedback, feature requests,
performance and reliability concerns, and UI/UX feedback."""

    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT),
        ChatMessage(role="user", content=user_prompt),
    ]


def _extract_json_text(content: str) -> str:
    text = _THINK_RE.sub("", content or "").strip()
    text = _CODE_FENCE_RE.sub("", text).strip()
    if text.startswith("{") or text.startswith("["):
        return text
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def parse_theme_response(
    content: str,
    platform: Optional[str] = None,
    max_quotes: int = 3,
    max_suggestions: int = 3,
) -> ThemeParseResult:
    """Parse a model answer into validated theme candidates.

    Accepts either ``{"themes": [...]}`` or a bare list of themes,
    optionally wrapped in a code fence. Untitled themes are dropped.

    Returns:
        ThemeParseResult with candidates, or with ``error`` set when the
        answer does not match the expected shape.
    """
    text = _extract_json_text(content)
    if not text:
        return ThemeParseResult(error="Empty response from extraction model")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ThemeParseResult(error=f"Response is not valid JSON: {e}")

    if isinstance(data, list):
        data = {"themes": data}
    if not isinstance(data, dict) or not isinstance(data.get("themes"), list):
        return ThemeParseResult(error="Response has no 'themes' list")

    try:
        parsed = ExtractionResponse.model_validate(data)
    except ValidationError as e:
        return ThemeParseResult(error=f"Theme list failed validation: {e.error_count()} errors")

    candidates = []
    for theme in parsed.themes:
        if not theme.title:
            continue
        candidates.append(
            theme.model_copy(
                update={
                    "quotes": theme.quotes[:max_quotes],
                    "suggestions": theme.suggestions[:max_suggestions],
                    "platform": platform,
                }
            )
        )
    return ThemeParseResult(candidates=candidates)


class ThemeExtractor:
    """Extract theme candidates for one platform partition of a batch."""

    def __init__(self, client: InferenceClient, config: Optional[ExtractionConfig] = None):
        self.client = client
        self.config = config or ExtractionConfig()

    async def extract(
        self,
        app_name: str,
        platform: str,
        review_texts: list[str],
        batch_index: Optional[int] = None,
    ) -> list[ThemeCandidate]:
        """Call the model and return the parsed candidates.

        Raises:
            ExtractionTimeoutError: If the model call timed out.
            ThemeParseError: If the answer is not a valid theme list.
            ThemeExtractionError: For any other inference failure.
        """
        texts = prepare_review_texts(review_texts, self.config)
        if not texts:
            return []

        messages = build_extraction_messages(app_name, platform, texts, batch_index)
        try:
            response = await self.client.chat(
                messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                json_mode=True,
            )
        except TimeoutInferenceError as e:
            raise ExtractionTimeoutError(str(e), platform=platform) from e
        except InferenceError as e:
            raise ThemeExtractionError(str(e), platform=platform) from e

        result = parse_theme_response(
            response.content,
            platform=platform,
            max_quotes=self.config.max_quotes_per_theme,
            max_suggestions=self.config.max_suggestions_per_theme,
        )
        if not result.ok:
            logger.warning(
                f"Unparseable extraction answer for {platform} "
                f"(finish_reason={response.finish_reason}): {result.error}"
            )
            raise ThemeParseError(result.error or "Unparseable response", platform=platform)

        logger.info(
            f"Extracted {len(result.candidates)} themes for {platform} "
            f"from {len(texts)} reviews in {response.model_info.latency_ms}ms"
        )
        return result.candidates
