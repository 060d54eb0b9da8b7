"""Run report assembled by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from prqa.utils.serialization import to_jsonable


class RunState(Enum):
    """Orchestrator states.  ``ERRORED`` is absorbing."""

    RECEIVED = "received"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    VALIDATING = "validating"
    EXECUTING = "executing"
    REPORTING = "reporting"
    DONE = "done"
    ERRORED = "errored"


class StageStatus(Enum):
    """Per-stage outcome as seen by report consumers."""

    SUCCEEDED = "succeeded"
    """The stage ran and produced its full payload."""

    DEGRADED = "degraded"
    """The stage partially succeeded, or an optional stage failed and was omitted."""

    FAILED = "failed"
    """A required stage failed; its output is omitted."""

    SKIPPED = "skipped"
    """The stage was planned but never started (run errored or was cancelled)."""


@dataclass
class StageReport:
    """Outcome of one stage in one run."""

    name: str
    status: StageStatus
    required: bool = False
    payload: Any = None
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "required": self.required,
            "duration_ms": self.duration_ms,
            "errors": list(self.errors),
            "payload": to_jsonable(self.payload),
        }


@dataclass(frozen=True)
class RunEvent:
    """One entry of the run's ordered event log."""

    sequence: int
    kind: str
    """``state``, ``stage``, ``validated``, ``materialized`` and similar."""

    subject: str = ""
    detail: str = ""


@dataclass
class RunReport:
    """Structured result of one orchestrator run."""

    run_id: str
    trigger: str
    state: RunState = RunState.RECEIVED
    stages: dict[str, StageReport] = field(default_factory=dict)
    cause: str = ""
    """Why the run errored, empty otherwise."""

    notify: bool = True
    history: list[RunState] = field(default_factory=list)
    events: list[RunEvent] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    finished_at: str = ""

    # ── Queries ───────────────────────────────────────────────────

    def stage(self, name: str) -> StageReport | None:
        return self.stages.get(name)

    def status_of(self, name: str) -> StageStatus | None:
        stage = self.stages.get(name)
        return stage.status if stage else None

    def payload_of(self, name: str) -> Any:
        stage = self.stages.get(name)
        return stage.payload if stage else None

    @property
    def succeeded(self) -> list[str]:
        return self._names_with(StageStatus.SUCCEEDED)

    @property
    def degraded(self) -> list[str]:
        return self._names_with(StageStatus.DEGRADED)

    @property
    def failed(self) -> list[str]:
        return self._names_with(StageStatus.FAILED)

    @property
    def errored(self) -> bool:
        return self.state is RunState.ERRORED

    def events_of(self, kind: str) -> list[RunEvent]:
        return [e for e in self.events if e.kind == kind]

    # ── Projections ───────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "state": self.state.value,
            "cause": self.cause,
            "notify": self.notify,
            "history": [s.value for s in self.history],
            "stages": {name: stage.to_dict() for name, stage in self.stages.items()},
            "usage": dict(self.usage),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    def notification(self) -> dict[str, Any] | None:
        """Thin projection for the notification channel.

        Returns ``None`` for silent runs so nothing is delivered externally.
        """
        if not self.notify:
            return None
        headline: dict[str, Any] = {}
        analysis = self.payload_of("analysis")
        if analysis is not None:
            headline = {
                "risk_score": getattr(analysis, "risk_score", None),
                "merge_recommendation": to_jsonable(
                    getattr(analysis, "merge_recommendation", None)
                ),
                "summary": getattr(getattr(analysis, "summary", None), "title", ""),
            }
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "cause": self.cause,
            "succeeded": self.succeeded,
            "degraded": self.degraded,
            "failed": self.failed,
            **headline,
        }

    def _names_with(self, status: StageStatus) -> list[str]:
        return [name for name, stage in self.stages.items() if stage.status is status]
