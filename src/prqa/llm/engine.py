"""LLMEngine — abstract interface for the model gateway."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from prqa.llm.errors import (
    GatewayError,
    GatewayFatalError,
    GatewayTransientError,
    MalformedResponseError,
)
from prqa.llm.structured import parse_json_payload

__all__ = [
    "GatewayError",
    "GatewayFatalError",
    "GatewayTransientError",
    "GenerationRequest",
    "LLMEngine",
    "LLMMessage",
    "LLMResponse",
    "MalformedResponseError",
]


@dataclass
class LLMResponse:
    """Result from an LLM generation call."""

    text: str
    """The generated text content."""

    model: str
    """Model identifier that produced the response."""

    prompt_tokens: int = 0
    """Number of tokens in the prompt."""

    completion_tokens: int = 0
    """Number of tokens in the completion."""

    retries: int = 0
    """How many retries were spent before this response arrived."""

    cached: bool = False
    """``True`` when the response was served from the response cache."""

    cost_usd: float = 0.0
    """Estimated cost of the call, ``0.0`` when the price is unknown."""

    @property
    def total_tokens(self) -> int:
        """Total tokens consumed (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LLMMessage:
    """A single message in a conversation."""

    role: str
    """One of ``'system'``, ``'user'``, or ``'assistant'``."""

    content: str
    """Text content of the message."""


@dataclass
class GenerationRequest:
    """Parameters for an LLM generation call."""

    messages: list[LLMMessage]
    """Conversation messages to send to the model."""

    model: str | None = None
    """Override the default model for this request."""

    temperature: float = 0.2
    """Sampling temperature (lower = more deterministic)."""

    max_tokens: int = 4096
    """Maximum tokens to generate."""

    timeout: float | None = None
    """Per-call timeout in seconds; ``None`` uses the backend default."""

    cache_key: str | None = None
    """Idempotency key; identical keys may be served from the response cache."""

    json_mode: bool = False
    """Ask the backend to answer with a single JSON object."""

    metadata: dict[str, str | int | float | bool] = field(default_factory=dict)
    """Structured metadata forwarded to provider calls when supported."""


class LLMEngine(ABC):
    """Abstract interface for LLM generation.

    Every backend adapter and every decorator (tracking, caching) implements
    this interface, so callers only ever talk to ``generate`` and
    ``generate_json``.
    """

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> LLMResponse:
        """Send a generation request and return the response.

        Args:
            request: The generation parameters including messages and model config.

        Returns:
            The LLM response with generated text and token usage.

        Raises:
            GatewayTransientError: When the retry budget for transient failures ran out.
            GatewayFatalError: On non-retryable failures (auth, bad request).
        """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the default model identifier for this engine."""

    def discard(self, request: GenerationRequest) -> None:
        """Forget any stored answer to *request*; its content proved unusable."""

    async def generate_text(self, prompt: str, *, context: str = "") -> str:
        """Convenience method: send a simple prompt and return the text."""
        messages: list[LLMMessage] = []
        if context:
            messages.append(LLMMessage(role="system", content=context))
        messages.append(LLMMessage(role="user", content=prompt))

        response = await self.generate(GenerationRequest(messages=messages))
        return response.text

    async def generate_json(
        self,
        request: GenerationRequest,
        *,
        required: tuple[str, ...] = (),
    ) -> tuple[dict[str, Any], LLMResponse]:
        """Generate and parse a JSON object response.

        Raises:
            MalformedResponseError: If the content is not a JSON object or
                lacks any of the ``required`` keys.
        """
        request.json_mode = True
        response = await self.generate(request)
        try:
            payload = parse_json_payload(
                response.text,
                required=required,
                model=response.model,
                retries=response.retries,
            )
        except MalformedResponseError:
            self.discard(request)
            raise
        return payload, response
