"""Factory for creating the model gateway from configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from prqa.llm.builtin import BuiltinLLM, BuiltinLLMConfig, RateLimitConfig, RetryConfig
from prqa.llm.cached_engine import CachedLLMEngine
from prqa.llm.engine import GatewayFatalError, LLMEngine, LLMResponse
from prqa.llm.tracked_engine import TrackedLLMEngine
from prqa.llm.usage import UsageLedger
from prqa.utils.cache import MemoryCache

if TYPE_CHECKING:
    from prqa.config import LLMConfig

_RESPONSE_CACHE_SIZE = 128
_RESPONSE_CACHE_TTL_SECONDS = 3600.0


def create_engine(
    config: LLMConfig,
    *,
    ledger: UsageLedger | None = None,
    cache: MemoryCache[LLMResponse] | None = None,
) -> TrackedLLMEngine:
    """Build the gateway stack ``Tracked(Cached(BuiltinLLM))``.

    Tracking is always the outermost layer so that cache hits and failed
    calls are recorded too.

    Raises:
        GatewayFatalError: If no model is configured.
    """
    model = config.model
    if not model:
        raise GatewayFatalError(
            "No LLM model configured. Set 'llm.model' in .prqa.yml or PRQA_LLM_MODEL."
        )

    engine: LLMEngine = BuiltinLLM(
        BuiltinLLMConfig(
            model=model,
            provider=config.provider or None,
            api_key=config.api_key or None,
            base_url=config.base_url or None,
            timeout=config.timeout or None,
            retry=RetryConfig(max_retries=config.max_retries),
            rate_limit=RateLimitConfig(requests_per_minute=config.requests_per_minute),
        )
    )

    if config.cache_enabled:
        engine = CachedLLMEngine(
            engine,
            cache
            or MemoryCache(max_size=_RESPONSE_CACHE_SIZE, ttl_seconds=_RESPONSE_CACHE_TTL_SECONDS),
        )

    return TrackedLLMEngine(engine, ledger or UsageLedger())
