"""Stage contract shared by every pipeline agent.

An agent receives one :class:`TaskInput` and answers with one
:class:`TaskOutput`.  The orchestrator maps that answer onto the stage
report: ``FAILED`` fails a required stage and degrades an optional one,
while a ``COMPLETED`` output flagged ``partial`` degrades any stage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskInput:
    """Input for one stage; subclasses carry typed fields instead of ``context``."""

    task_type: str
    target: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskOutput:
    """Answer of one stage.

    ``result`` is keyed by stage name; the orchestrator stores
    ``result[<stage>]`` as that stage's payload.
    """

    status: TaskStatus
    result: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    partial: bool = False
    """The stage produced a payload but some of its work did not land."""

    @classmethod
    def failed(cls, exc: BaseException | str, **result: Any) -> TaskOutput:
        """Build a ``FAILED`` output; exceptions are rendered as ``Kind: message``."""
        if isinstance(exc, BaseException):
            result.setdefault("error_kind", type(exc).__name__)
            message = f"{type(exc).__name__}: {exc}"
        else:
            message = exc
        return cls(status=TaskStatus.FAILED, result=result, errors=[message])

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class BaseAgent(ABC):
    """A pipeline stage the orchestrator can dispatch by :attr:`name`."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key of this agent."""

    @property
    @abstractmethod
    def description(self) -> str: ...

    @abstractmethod
    async def run(self, task: TaskInput) -> TaskOutput:
        """Run the stage; expected failures come back as ``FAILED``, not raised."""
