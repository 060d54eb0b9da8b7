"""Built-in LLM adapter using LiteLLM for multi-provider support."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from litellm.exceptions import (
    APIConnectionError as LiteLLMConnectionError,
)
from litellm.exceptions import (
    APIError as LiteLLMAPIError,
)
from litellm.exceptions import (
    AuthenticationError as LiteLLMAuthError,
)
from litellm.exceptions import (
    BadRequestError as LiteLLMBadRequestError,
)
from litellm.exceptions import (
    InternalServerError as LiteLLMInternalServerError,
)
from litellm.exceptions import (
    NotFoundError as LiteLLMNotFoundError,
)
from litellm.exceptions import (
    PermissionDeniedError as LiteLLMPermissionDeniedError,
)
from litellm.exceptions import (
    RateLimitError as LiteLLMRateLimitError,
)
from litellm.exceptions import (
    ServiceUnavailableError as LiteLLMServiceUnavailableError,
)
from litellm.exceptions import (
    Timeout as LiteLLMTimeout,
)

from prqa.llm.engine import (
    GatewayFatalError,
    GatewayTransientError,
    GenerationRequest,
    LLMEngine,
    LLMResponse,
)

logger = logging.getLogger(__name__)

# Suppress litellm's noisy default logging
litellm.suppress_debug_info = True

_JSON_INSTRUCTION = (
    "Respond with a single valid JSON object only. "
    "Do not wrap it in markdown and do not add commentary."
)

# Order matters: the specific subclasses must be matched before APIError.
_FATAL_ERRORS: tuple[type[Exception], ...] = (
    LiteLLMAuthError,
    LiteLLMPermissionDeniedError,
    LiteLLMNotFoundError,
    LiteLLMBadRequestError,
)
_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    LiteLLMRateLimitError,
    LiteLLMTimeout,
    LiteLLMServiceUnavailableError,
    LiteLLMInternalServerError,
    LiteLLMConnectionError,
)


@dataclass
class RetryConfig:
    """Configuration for retry behaviour on transient failures."""

    max_retries: int = 3
    """Maximum number of retry attempts."""

    base_delay: float = 1.0
    """Base delay in seconds for exponential backoff."""

    max_delay: float = 60.0
    """Maximum delay cap in seconds."""

    backoff_factor: float = 2.0
    """Multiplier applied to the delay on each retry."""


@dataclass
class RateLimitConfig:
    """Token-bucket rate limiter configuration."""

    requests_per_minute: int = 60
    """Maximum requests allowed per minute."""


@dataclass
class BuiltinLLMConfig:
    """Construction parameters for :class:`BuiltinLLM`."""

    model: str
    """LiteLLM model string, e.g. ``"gpt-4o"`` or ``"ollama/llama3"``."""

    provider: str | None = None
    """Provider hint, informational only."""

    api_key: str | None = None
    """API key passed through to LiteLLM."""

    base_url: str | None = None
    """Custom API base URL."""

    timeout: float | None = None
    """Default per-call timeout in seconds."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    """Retry policy for transient failures."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    """Client-side request rate limit."""


@dataclass
class _TokenBucket:
    """Simple token-bucket rate limiter."""

    capacity: int
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = float(self.capacity)

    async def acquire(self) -> None:
        """Wait until a token is available, then consume one."""
        while True:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return
            wait = (1.0 - self.tokens) / (self.capacity / 60.0)
            await asyncio.sleep(min(wait, 1.0))

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.last_refill = now
        self.tokens = min(float(self.capacity), self.tokens + elapsed * (self.capacity / 60.0))


class BuiltinLLM(LLMEngine):
    """LiteLLM-backed engine supporting OpenAI, Anthropic, Ollama, and more.

    This adapter delegates all provider-specific logic to LiteLLM so that
    users can configure any supported provider via a single ``model`` string.
    Transient failures are retried with exponential backoff; everything else
    fails immediately as :class:`GatewayFatalError`.
    """

    def __init__(self, config: BuiltinLLMConfig) -> None:
        self._config = config
        self._retry = config.retry
        self._bucket = _TokenBucket(capacity=config.rate_limit.requests_per_minute)

    # ── Public API ────────────────────────────────────────────────

    @property
    def model_name(self) -> str:
        return self._config.model

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        model = request.model or self._config.model
        messages = [{"role": m.role, "content": m.content} for m in request.messages]
        if request.json_mode:
            messages = _with_json_instruction(messages)

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        timeout = request.timeout or self._config.timeout
        if timeout:
            kwargs["timeout"] = timeout
        if request.metadata:
            kwargs["metadata"] = dict(request.metadata)
        if self._config.api_key:
            kwargs["api_key"] = self._config.api_key
        if self._config.base_url:
            kwargs["api_base"] = self._config.base_url

        raw, retries = await self._call_with_retry(kwargs, model)
        response = self._parse_response(raw, model)
        response.retries = retries
        response.cost_usd = _completion_cost(raw)
        return response

    # ── Internal helpers ──────────────────────────────────────────

    async def _call_with_retry(self, kwargs: dict[str, Any], model: str) -> tuple[Any, int]:
        """Call ``litellm.acompletion`` with rate limiting and retries.

        Returns the raw completion and the number of retries spent.
        """
        last_exc: Exception | None = None
        attempts = self._retry.max_retries + 1

        for attempt in range(attempts):
            await self._bucket.acquire()

            try:
                return await litellm.acompletion(**kwargs), attempt
            except _FATAL_ERRORS as exc:
                raise GatewayFatalError(str(exc), model=model, retries=attempt) from exc
            except _TRANSIENT_ERRORS as exc:
                last_exc = exc
            except LiteLLMAPIError as exc:
                if not _is_transient(exc):
                    raise GatewayFatalError(str(exc), model=model, retries=attempt) from exc
                last_exc = exc

            if attempt + 1 < attempts:
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "%s (attempt %d/%d), retrying in %.1fs",
                    type(last_exc).__name__,
                    attempt + 1,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)

        raise GatewayTransientError(
            f"Retry budget exhausted after {attempts} attempts: {last_exc}",
            model=model,
            retries=self._retry.max_retries,
        ) from last_exc

    def _backoff_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay for the given attempt."""
        delay = self._retry.base_delay * (self._retry.backoff_factor**attempt)
        return min(delay, self._retry.max_delay)

    @staticmethod
    def _parse_response(raw: Any, model: str) -> LLMResponse:
        """Extract an ``LLMResponse`` from a LiteLLM completion result."""
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)

        return LLMResponse(
            text=choice.message.content or "",
            model=raw.model or model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )


_SERVER_ERROR_THRESHOLD = 500


def _is_transient(exc: Exception) -> bool:
    """Return ``True`` if the API error looks transient (5xx or timeout)."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= _SERVER_ERROR_THRESHOLD:
        return True
    msg = str(exc).lower()
    return "timeout" in msg or "overloaded" in msg


def _with_json_instruction(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    for idx, message in enumerate(messages):
        if message["role"] == "system":
            updated = dict(message)
            updated["content"] = f"{message['content']}\n\n{_JSON_INSTRUCTION}"
            return [*messages[:idx], updated, *messages[idx + 1 :]]
    return [{"role": "system", "content": _JSON_INSTRUCTION}, *messages]


def _completion_cost(raw: Any) -> float:
    """Price a completion with LiteLLM's model table, ``0.0`` when unknown."""
    try:
        return float(litellm.completion_cost(completion_response=raw))
    except Exception:
        logger.debug("No pricing available for completion", exc_info=True)
        return 0.0
