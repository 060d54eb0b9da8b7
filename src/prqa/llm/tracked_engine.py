"""TrackedLLMEngine — wrapper that records every gateway call.

Wraps any LLMEngine implementation so that each call, including failed
and cancelled ones, lands in a :class:`~prqa.llm.usage.UsageLedger`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from prqa.llm.engine import (
    GatewayFatalError,
    GatewayTransientError,
    GenerationRequest,
    LLMEngine,
    LLMResponse,
    MalformedResponseError,
)
from prqa.llm.structured import parse_json_payload
from prqa.llm.usage import CallOutcome, ModelCallRecord, current_scope
from prqa.utils.cache import content_hash

if TYPE_CHECKING:
    from prqa.llm.usage import UsageLedger

logger = logging.getLogger(__name__)


class TrackedLLMEngine(LLMEngine):
    """Decorator that records all LLM calls to a UsageLedger."""

    def __init__(self, inner: LLMEngine, ledger: UsageLedger) -> None:
        self._inner = inner
        self._ledger = ledger

    @property
    def ledger(self) -> UsageLedger:
        """Access the underlying ledger (used by the orchestrator for reporting)."""
        return self._ledger

    @property
    def model_name(self) -> str:
        """Return the default model identifier from the wrapped engine."""
        return self._inner.model_name

    def discard(self, request: GenerationRequest) -> None:
        self._inner.discard(request)

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        """Delegate to the inner engine and record the call."""
        started = time.monotonic()
        response = await self._call_inner(request, started)
        outcome = CallOutcome.CACHED if response.cached else CallOutcome.SUCCESS
        self._record(request, started, outcome=outcome, response=response)
        return response

    async def generate_json(
        self,
        request: GenerationRequest,
        *,
        required: tuple[str, ...] = (),
    ) -> tuple[dict[str, Any], LLMResponse]:
        """Generate JSON; a shape mismatch is recorded as a malformed call.

        Each call yields exactly one ledger record.
        """
        request.json_mode = True
        started = time.monotonic()
        response = await self._call_inner(request, started)
        try:
            payload = parse_json_payload(
                response.text,
                required=required,
                model=response.model,
                retries=response.retries,
            )
        except MalformedResponseError as exc:
            self._record(
                request,
                started,
                outcome=CallOutcome.MALFORMED,
                response=response,
                error=str(exc),
            )
            self._inner.discard(request)
            raise
        outcome = CallOutcome.CACHED if response.cached else CallOutcome.SUCCESS
        self._record(request, started, outcome=outcome, response=response)
        return payload, response

    # ── Internal helpers ──────────────────────────────────────────

    async def _call_inner(self, request: GenerationRequest, started: float) -> LLMResponse:
        """Call the inner engine, recording only failures."""
        try:
            return await self._inner.generate(request)
        except asyncio.CancelledError:
            self._record(request, started, outcome=CallOutcome.CANCELLED, error="cancelled")
            raise
        except GatewayTransientError as exc:
            self._record(
                request,
                started,
                outcome=CallOutcome.TRANSIENT_ERROR,
                error=str(exc),
                retries=exc.retries,
            )
            raise
        except Exception as exc:
            retries = exc.retries if isinstance(exc, GatewayFatalError) else 0
            self._record(
                request, started, outcome=CallOutcome.FATAL_ERROR, error=str(exc), retries=retries
            )
            raise

    def _record(  # noqa: PLR0913
        self,
        request: GenerationRequest,
        started: float,
        *,
        outcome: CallOutcome,
        response: LLMResponse | None = None,
        error: str = "",
        retries: int = 0,
    ) -> None:
        scope = current_scope()
        prompt_text = "\n".join(f"{m.role}: {m.content}" for m in request.messages)
        try:
            self._ledger.append(
                ModelCallRecord(
                    prompt_id=content_hash(prompt_text),
                    model=(response.model if response else None)
                    or request.model
                    or self._inner.model_name,
                    outcome=outcome,
                    prompt_tokens=response.prompt_tokens if response else 0,
                    completion_tokens=response.completion_tokens if response else 0,
                    latency_ms=int((time.monotonic() - started) * 1000),
                    retries=response.retries if response else retries,
                    cost_usd=response.cost_usd if response else 0.0,
                    run_id=scope.run_id,
                    stage=scope.stage,
                    round=scope.round,
                    error=error,
                )
            )
        except Exception:
            logger.exception("Failed to record model call")
