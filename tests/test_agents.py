"""Tests for the stage contract shared by pipeline agents."""

from __future__ import annotations

import pytest

from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.llm.engine import GatewayFatalError


class EchoAgent(BaseAgent):
    """Test agent that echoes its target under its own stage name."""

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes input back"

    async def run(self, task: TaskInput) -> TaskOutput:
        if not task.target:
            return TaskOutput.failed("Task needs a target")
        return TaskOutput(
            status=TaskStatus.COMPLETED,
            result={self.name: task.target},
            partial=bool(task.context.get("truncated")),
        )


@pytest.mark.asyncio
async def test_completed_output_is_keyed_by_stage() -> None:
    output = await EchoAgent().run(TaskInput(task_type="echo", target="acme/shop#42"))

    assert output.ok
    assert not output.partial
    assert output.result == {"echo": "acme/shop#42"}


@pytest.mark.asyncio
async def test_partial_output_is_still_ok() -> None:
    task = TaskInput(task_type="echo", target="acme/shop#42", context={"truncated": True})
    output = await EchoAgent().run(task)

    assert output.ok
    assert output.partial


@pytest.mark.asyncio
async def test_failed_from_message() -> None:
    output = await EchoAgent().run(TaskInput(task_type="echo", target=""))

    assert output.status is TaskStatus.FAILED
    assert output.errors == ["Task needs a target"]
    assert output.result == {}


def test_failed_from_exception_records_kind() -> None:
    output = TaskOutput.failed(GatewayFatalError("invalid api key"), stage="analysis")

    assert not output.ok
    assert output.errors == ["GatewayFatalError: invalid api key"]
    assert output.result == {"error_kind": "GatewayFatalError", "stage": "analysis"}
