"""Inference client for the theme-extraction model.

Talks to any OpenAI-compatible chat completions endpoint.

Usage:
    config = InferenceConfig(base_url="http://localhost:8080")
    client = InferenceClient(config=config)

    messages = [
        ChatMessage(role="system", content="You extract product themes."),
        ChatMessage(role="user", content="Reviews: ..."),
    ]

    response = await client.chat(messages, json_mode=True)
    print(response.content)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class InferenceError(Exception):
    """Base exception for inference errors."""

    pass


class ConnectionInferenceError(InferenceError):
    """Connection error during inference."""

    pass


class TimeoutInferenceError(InferenceError):
    """Timeout during inference."""

    pass


class RateLimitInferenceError(InferenceError):
    """The inference server rejected the request with HTTP 429."""

    pass


class ResponseInferenceError(InferenceError):
    """Invalid or malformed response from inference server."""

    pass


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class InferenceConfig:
    """Configuration for the inference client.

    Attributes:
        base_url: URL of the inference server
        model_name: Name of the model to use
        timeout: Request timeout in seconds
        max_tokens: Maximum tokens to generate
        temperature: Sampling temperature
        api_key: Optional bearer token
    """

    base_url: str
    model_name: str = "default"
    timeout: float = 120.0
    max_tokens: int = 4000
    temperature: float = 0.3
    api_key: Optional[str] = None


@dataclass
class ChatMessage:
    """A message in a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class ModelInfo:
    """Model and usage details of one inference call."""

    model_name: str
    temperature: float
    max_tokens: int
    input_tokens: int
    output_tokens: int
    latency_ms: int
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "model_name": self.model_name,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
            **self.extra,
        }


@dataclass
class ChatResponse:
    """Response from a chat request."""

    content: str
    model_info: ModelInfo
    finish_reason: str


# =============================================================================
# INFERENCE CLIENT
# =============================================================================


class InferenceClient:
    """Async client for chat completions."""

    def __init__(self, config: InferenceConfig):
        self.config = config
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._http_client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                headers=headers,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _make_request(self, payload: dict[str, Any]) -> dict:
        """POST a chat completion payload.

        Raises:
            InferenceError: On connection, timeout, or HTTP errors
        """
        client = await self._get_http_client()
        logger.debug(
            f"Chat request to {self.config.base_url} model={payload.get('model')} "
            f"messages={len(payload.get('messages', []))}"
        )

        try:
            response = await client.post("/v1/chat/completions", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.ConnectError as e:
            raise ConnectionInferenceError(f"Connection error: {e}") from e
        except httpx.TimeoutException as e:
            raise TimeoutInferenceError(f"Timeout error: {e}") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitInferenceError(f"Rate limited: {e}") from e
            raise InferenceError(f"HTTP error: {e}") from e
        except ValueError as e:
            raise ResponseInferenceError(f"Response is not JSON: {e}") from e

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        """Send a chat request to the model.

        Args:
            messages: List of ChatMessage objects
            temperature: Override default temperature
            max_tokens: Override default max_tokens
            json_mode: Ask the server for a JSON object response

        Returns:
            ChatResponse with content and model info

        Raises:
            InferenceError: On errors during inference
        """
        temp = temperature if temperature is not None else self.config.temperature
        tokens = max_tokens if max_tokens is not None else self.config.max_tokens

        payload: dict[str, Any] = {
            "model": self.config.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temp,
            "max_tokens": tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        start_time = time.monotonic()
        response_data = await self._make_request(payload)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        if "error" in response_data:
            error_info = response_data["error"]
            if isinstance(error_info, dict):
                error_msg = error_info.get("message", str(error_info))
            else:
                error_msg = str(error_info)
            logger.error(f"Inference server returned error: {error_msg}")
            raise ResponseInferenceError(f"Inference server error: {error_msg}")

        try:
            choices = response_data.get("choices", [])
            if not choices:
                raise ResponseInferenceError("Invalid response: no choices")

            choice = choices[0]
            content = (choice.get("message") or {}).get("content") or ""
            finish_reason = choice.get("finish_reason", "unknown")
            usage = response_data.get("usage") or {}
        except (AttributeError, KeyError, IndexError, TypeError) as e:
            raise ResponseInferenceError(f"Invalid response format: {e}") from e

        model_info = ModelInfo(
            model_name=self.config.model_name,
            temperature=temp,
            max_tokens=tokens,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            latency_ms=elapsed_ms,
        )

        return ChatResponse(content=content, model_info=model_info, finish_reason=finish_reason)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================


def get_inference_client() -> InferenceClient:
    """Create an InferenceClient from application settings.

    Raises:
        RuntimeError: If inference_url is not configured.
    """
    from reviewpulse_core.config import get_settings

    settings = get_settings()

    if not settings.inference_url:
        raise RuntimeError("INFERENCE_URL not configured")

    config = InferenceConfig(
        base_url=settings.inference_url,
        model_name=settings.inference_model or "default",
        timeout=settings.inference_timeout,
        api_key=settings.inference_api_key,
    )

    return InferenceClient(config=config)


__all__ = [
    "InferenceClient",
    "InferenceConfig",
    "ChatMessage",
    "ChatResponse",
    "ModelInfo",
    "InferenceError",
    "ConnectionInferenceError",
    "TimeoutInferenceError",
    "RateLimitInferenceError",
    "ResponseInferenceError",
    "get_inference_client",
]
