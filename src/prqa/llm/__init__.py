"""Model gateway for prqa."""

from prqa.llm.builtin import BuiltinLLM
from prqa.llm.engine import (
    GatewayError,
    GatewayFatalError,
    GatewayTransientError,
    GenerationRequest,
    LLMEngine,
    LLMMessage,
    LLMResponse,
    MalformedResponseError,
)
from prqa.llm.factory import create_engine
from prqa.llm.tracked_engine import TrackedLLMEngine
from prqa.llm.usage import ModelCallRecord, UsageLedger, call_scope

__all__ = [
    "BuiltinLLM",
    "GatewayError",
    "GatewayFatalError",
    "GatewayTransientError",
    "GenerationRequest",
    "LLMEngine",
    "LLMMessage",
    "LLMResponse",
    "MalformedResponseError",
    "ModelCallRecord",
    "TrackedLLMEngine",
    "UsageLedger",
    "call_scope",
    "create_engine",
]
