"""Response cache in front of an LLMEngine."""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from prqa.llm.engine import GenerationRequest, LLMEngine, LLMResponse

if TYPE_CHECKING:
    from prqa.utils.cache import MemoryCache

logger = logging.getLogger(__name__)


class CachedLLMEngine(LLMEngine):
    """Serve repeated requests that carry the same ``cache_key`` from memory.

    Requests without a cache key always reach the wrapped engine.  Failed
    calls are never cached, and a reply discarded as malformed is evicted so
    the next request with that key reaches the backend again.
    """

    def __init__(self, inner: LLMEngine, cache: MemoryCache[LLMResponse]) -> None:
        self._inner = inner
        self._cache = cache

    @property
    def model_name(self) -> str:
        return self._inner.model_name

    def _key(self, request: GenerationRequest) -> str:
        return f"{request.model or self._inner.model_name}:{request.cache_key}"

    def discard(self, request: GenerationRequest) -> None:
        if request.cache_key and self._cache.pop(self._key(request)):
            logger.debug("Evicted unusable cached response for %s", request.cache_key)
        self._inner.discard(request)

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        if not request.cache_key:
            return await self._inner.generate(request)

        key = self._key(request)
        hit = self._cache.get(key)
        if hit is not None:
            logger.debug("Response cache hit for %s", request.cache_key)
            return dataclasses.replace(hit, cached=True, retries=0, cost_usd=0.0)

        response = await self._inner.generate(request)
        self._cache.put(key, response)
        return response
