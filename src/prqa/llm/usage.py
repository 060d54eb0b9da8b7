"""Usage accounting for model gateway calls.

Every call that passes through :class:`~prqa.llm.tracked_engine.TrackedLLMEngine`
appends one :class:`ModelCallRecord` to a :class:`UsageLedger`.  Records are
attributed to a run, a stage and a correction round through a context
variable, so concurrent stages dispatched with ``asyncio.gather`` keep their
own attribution without passing it through every call site.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class CallOutcome(Enum):
    """How a single gateway call ended."""

    SUCCESS = "success"
    CACHED = "cached"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"
    MALFORMED = "malformed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallScope:
    """Attribution applied to calls made inside :func:`call_scope`."""

    run_id: str = ""
    stage: str = ""
    round: int = 0


_SCOPE: ContextVar[CallScope] = ContextVar("prqa_call_scope", default=CallScope())  # noqa: B039


@contextmanager
def call_scope(
    *,
    run_id: str | None = None,
    stage: str | None = None,
    round: int | None = None,  # noqa: A002
) -> Iterator[CallScope]:
    """Attribute gateway calls made inside the block.

    Unspecified fields are inherited from the enclosing scope.
    """
    parent = _SCOPE.get()
    scope = CallScope(
        run_id=parent.run_id if run_id is None else run_id,
        stage=parent.stage if stage is None else stage,
        round=parent.round if round is None else round,
    )
    token = _SCOPE.set(scope)
    try:
        yield scope
    finally:
        _SCOPE.reset(token)


def current_scope() -> CallScope:
    """Return the attribution active for the current task."""
    return _SCOPE.get()


@dataclass(frozen=True)
class ModelCallRecord:
    """One gateway call, successful or not."""

    prompt_id: str
    """Stable hash of the prompt messages."""

    model: str
    """Model that served (or was asked to serve) the call."""

    outcome: CallOutcome
    """How the call ended."""

    prompt_tokens: int = 0
    """Tokens sent."""

    completion_tokens: int = 0
    """Tokens received."""

    latency_ms: int = 0
    """Wall-clock duration including retries."""

    retries: int = 0
    """Retries spent inside the gateway."""

    cost_usd: float = 0.0
    """Estimated cost."""

    run_id: str = ""
    stage: str = ""
    round: int = 0

    error: str = ""
    """Error message for failed calls."""

    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


@dataclass
class UsageSummary:
    """Aggregated usage for a run (or the whole ledger)."""

    calls: int = 0
    failed_calls: int = 0
    cached_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    retries: int = 0
    latency_ms: int = 0
    cost_usd: float = 0.0
    by_stage: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "failed_calls": self.failed_calls,
            "cached_calls": self.cached_calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "retries": self.retries,
            "latency_ms": self.latency_ms,
            "cost_usd": round(self.cost_usd, 6),
            "by_stage": self.by_stage,
        }


_FAILED_OUTCOMES = frozenset(
    {
        CallOutcome.TRANSIENT_ERROR,
        CallOutcome.FATAL_ERROR,
        CallOutcome.MALFORMED,
        CallOutcome.CANCELLED,
    }
)


class UsageLedger:
    """Append-only, thread-safe collection of :class:`ModelCallRecord`."""

    def __init__(self) -> None:
        self._records: list[ModelCallRecord] = []
        self._lock = threading.Lock()

    def append(self, record: ModelCallRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, run_id: str | None = None) -> list[ModelCallRecord]:
        """Return a snapshot of records, optionally filtered to one run."""
        with self._lock:
            snapshot = list(self._records)
        if run_id is None:
            return snapshot
        return [r for r in snapshot if r.run_id == run_id]

    def summarize(self, run_id: str | None = None) -> UsageSummary:
        """Aggregate tokens, latency, retries and cost, also per stage."""
        summary = UsageSummary()
        stages: dict[str, dict[str, Any]] = defaultdict(
            lambda: {"calls": 0, "failed_calls": 0, "total_tokens": 0, "cost_usd": 0.0}
        )
        for record in self.records(run_id):
            summary.calls += 1
            summary.prompt_tokens += record.prompt_tokens
            summary.completion_tokens += record.completion_tokens
            summary.retries += record.retries
            summary.latency_ms += record.latency_ms
            summary.cost_usd += record.cost_usd
            if record.outcome in _FAILED_OUTCOMES:
                summary.failed_calls += 1
            elif record.outcome is CallOutcome.CACHED:
                summary.cached_calls += 1

            stage = stages[record.stage or "unscoped"]
            stage["calls"] += 1
            stage["total_tokens"] += record.prompt_tokens + record.completion_tokens
            stage["cost_usd"] += record.cost_usd
            if record.outcome in _FAILED_OUTCOMES:
                stage["failed_calls"] += 1

        summary.by_stage = {name: stages[name] for name in sorted(stages)}
        return summary
