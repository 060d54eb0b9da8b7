"""Tests for the CIFixer state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from prqa.agents.base import TaskStatus
from prqa.agents.debuggers.ci_fixer import (
    CIFailureInfo,
    CIFixer,
    CIFixTask,
    CIState,
    ExhaustedError,
    FailureClass,
    FixAction,
    FixState,
    FixStateError,
    FixVerdict,
    classify_from_log,
    extract_error_message,
    format_fix_summary,
    truncate_log,
)
from prqa.agents.executors.autonomous import ActionKind, AutonomousExecutor, SafetyEnvelope
from prqa.llm.engine import GatewayFatalError, GatewayTransientError

if TYPE_CHECKING:
    from conftest import MemoryWorkspace, ScriptedEngine

    from prqa.llm.tracked_engine import TrackedLLMEngine

_SPEC_PATH = "tests/e2e/tests/login.spec.ts"
_LOG = """\
Running 3 tests using 1 worker
  1) login.spec.ts:4:1 > TC001 login succeeds
    Error: expect(received).toBeVisible()
    Expected: visible
"""


def _failure(**kwargs: object) -> CIFailureInfo:
    defaults: dict[str, object] = {
        "job": "e2e",
        "log": _LOG,
        "failed_tests": ["TC001 login succeeds"],
        "classification": FailureClass.ASSERTION,
    }
    defaults.update(kwargs)
    return CIFailureInfo(**defaults)  # type: ignore[arg-type]


def _fix(content: str, path: str = _SPEC_PATH) -> dict[str, object]:
    return {
        "can_fix": True,
        "analysis": "Welcome banner text changed",
        "fixed_file": {"path": path, "content": content, "changes": ["Update expected text"]},
    }


@pytest.fixture
def fixer(tracked: TrackedLLMEngine, workspace: MemoryWorkspace) -> CIFixer:
    return CIFixer(tracked, AutonomousExecutor(workspace), max_attempts=2)


# ── State machine ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_exhausted_after_exactly_the_bound(
    scripted: ScriptedEngine,
    fixer: CIFixer,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
) -> None:
    scripted.script("ci_fix", _fix(sources["spec"]))

    first = await fixer.start(_failure())
    assert first.state is FixState.VERIFYING
    assert first.verdict is None
    assert first.attempts[0].success is None

    second = await fixer.record_followup(passed=False)
    assert second.state is FixState.VERIFYING
    assert [a.ci_state for a in second.attempts] == [CIState.FAILING, CIState.UNKNOWN]

    final = await fixer.record_followup(passed=False)

    assert final.state is FixState.EXHAUSTED
    assert final.verdict is FixVerdict.EXHAUSTED
    assert len(final.attempts) == 2
    assert [a.success for a in final.attempts] == [False, False]
    assert "Human intervention required" in final.message
    assert len(scripted.calls_for("ci_fix")) == 2
    assert workspace.files[_SPEC_PATH] == sources["spec"]

    with pytest.raises(ExhaustedError):
        await fixer.record_followup(passed=True)


@pytest.mark.parametrize("bound", [1, 2, 4])
@pytest.mark.asyncio
async def test_attempts_never_exceed_bound(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
    bound: int,
) -> None:
    scripted.script("ci_fix", _fix(sources["spec"]))
    fixer = CIFixer(tracked, AutonomousExecutor(workspace), max_attempts=bound)

    result = await fixer.start(_failure())
    while result.state is FixState.VERIFYING:
        result = await fixer.record_followup(passed=False)

    assert result.state is FixState.EXHAUSTED
    assert len(result.attempts) == bound
    assert [a.index for a in result.attempts] == list(range(1, bound + 1))


@pytest.mark.asyncio
async def test_passing_followup_resolves(
    scripted: ScriptedEngine, fixer: CIFixer, sources: dict[str, str]
) -> None:
    scripted.script("ci_fix", _fix(sources["spec"]))

    await fixer.start(_failure())
    result = await fixer.record_followup(passed=True)

    assert result.state is FixState.RESOLVED
    assert result.verdict is FixVerdict.FIXED
    assert result.attempts[0].ci_state is CIState.PASSING
    assert result.message == "Fixed on attempt 1"

    with pytest.raises(FixStateError):
        await fixer.record_followup(passed=True)


@pytest.mark.asyncio
async def test_followup_before_start_is_rejected(fixer: CIFixer) -> None:
    with pytest.raises(FixStateError, match="diagnosing"):
        await fixer.record_followup(passed=True)


@pytest.mark.asyncio
async def test_fixer_handles_one_failure(
    scripted: ScriptedEngine, fixer: CIFixer, sources: dict[str, str]
) -> None:
    scripted.script("ci_fix", _fix(sources["spec"]))
    await fixer.start(_failure())

    with pytest.raises(FixStateError, match="already"):
        await fixer.start(_failure())


def test_bound_must_be_positive(tracked: TrackedLLMEngine, workspace: MemoryWorkspace) -> None:
    with pytest.raises(ValueError, match="at least 1"):
        CIFixer(tracked, AutonomousExecutor(workspace), max_attempts=0)


# ── Attempts ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_patch_tracks_current_content(
    scripted: ScriptedEngine,
    fixer: CIFixer,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
) -> None:
    original = sources["spec"].replace("Welcome", "Hello")
    workspace.files[_SPEC_PATH] = original
    second = sources["spec"].replace("Welcome", "Welcome back")
    scripted.script("ci_fix", _fix(sources["spec"]), _fix(second))

    result = await fixer.start(_failure(test_files={_SPEC_PATH: original}))
    execution = result.attempts[0].execution
    assert execution is not None
    assert execution.results[0].action.kind is ActionKind.APPLY_PATCH
    assert execution.results[0].action.subject == "e2e#1"

    result = await fixer.record_followup(passed=False)

    assert result.attempts[1].execution is not None
    assert result.attempts[1].execution.all_succeeded
    assert workspace.files[_SPEC_PATH] == second
    [_, request] = scripted.calls_for("ci_fix")
    assert "Attempt 1: Update expected text" in request.messages[1].content


@pytest.mark.asyncio
async def test_start_leaves_callers_failure_untouched(
    scripted: ScriptedEngine,
    fixer: CIFixer,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
) -> None:
    original = sources["spec"].replace("Welcome", "Hello")
    workspace.files[_SPEC_PATH] = original
    scripted.script("ci_fix", _fix(sources["spec"]))
    long_log = _LOG + "x" * 5000
    failure = _failure(log=long_log, test_files={_SPEC_PATH: original})

    result = await fixer.start(failure)

    assert result.state is FixState.VERIFYING
    assert failure.log == long_log
    assert failure.error_message == ""
    assert failure.test_files == {_SPEC_PATH: original}
    assert workspace.files[_SPEC_PATH] == sources["spec"]


@pytest.mark.asyncio
async def test_attempts_share_one_byte_budget(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
) -> None:
    first = sources["spec"]
    second = sources["spec"].replace("Welcome", "Welcome back")
    envelope = SafetyEnvelope(max_bytes=len(first.encode()) + 10)
    fixer = CIFixer(tracked, AutonomousExecutor(workspace, envelope), max_attempts=2)
    scripted.script("ci_fix", _fix(first), _fix(second))

    await fixer.start(_failure())
    result = await fixer.record_followup(passed=False)

    assert len(result.attempts) == 2
    assert result.attempts[1].success is False
    assert "byte ceiling" in result.attempts[1].error
    assert workspace.files[_SPEC_PATH] == first


@pytest.mark.asyncio
async def test_fix_failing_validation_is_not_applied(
    scripted: ScriptedEngine,
    fixer: CIFixer,
    workspace: MemoryWorkspace,
    sources: dict[str, str],
) -> None:
    scripted.script("ci_fix", _fix(sources["spec_missing_expect"]))

    result = await fixer.start(_failure())

    assert result.state is FixState.EXHAUSTED
    assert len(result.attempts) == 2
    assert all("Fix failed validation" in a.error for a in result.attempts)
    assert workspace.writes == []


@pytest.mark.asyncio
async def test_gateway_error_consumes_an_attempt(
    scripted: ScriptedEngine, fixer: CIFixer, sources: dict[str, str]
) -> None:
    scripted.script("ci_fix", GatewayTransientError("timeout", retries=3), _fix(sources["spec"]))

    result = await fixer.start(_failure())

    assert result.state is FixState.VERIFYING
    assert result.attempts[0].success is False
    assert result.attempts[0].error.startswith("GatewayTransientError")
    assert result.attempts[1].success is None


@pytest.mark.asyncio
async def test_model_declines_fix(scripted: ScriptedEngine, fixer: CIFixer) -> None:
    scripted.script("ci_fix", {"can_fix": False, "analysis": "Product behaviour changed"})

    result = await fixer.start(_failure())

    assert result.state is FixState.EXHAUSTED
    assert result.verdict is FixVerdict.NOT_APPLICABLE
    assert result.message == "Product behaviour changed"
    assert len(result.attempts) == 1


@pytest.mark.asyncio
async def test_manifest_fix_skips_validation(
    scripted: ScriptedEngine, fixer: CIFixer, workspace: MemoryWorkspace
) -> None:
    scripted.script("ci_fix", _fix('{"name": "shop"}\n', path="package.json"))

    result = await fixer.start(_failure(classification=FailureClass.DEPENDENCY_MISMATCH))

    assert result.action is FixAction.PATCH_MANIFEST
    assert result.state is FixState.VERIFYING
    assert workspace.files["package.json"] == '{"name": "shop"}\n'


@pytest.mark.asyncio
async def test_flaky_failure_requests_rerun(scripted: ScriptedEngine, fixer: CIFixer) -> None:
    result = await fixer.start(_failure(classification=FailureClass.FLAKY_TEST))

    assert result.action is FixAction.RERUN
    assert result.state is FixState.VERIFYING
    assert result.attempts[0].path == ""
    assert scripted.calls == []


# ── Diagnosis ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_environment_failure_needs_human(scripted: ScriptedEngine, fixer: CIFixer) -> None:
    scripted.script("ci_classification", {"classification": "environment"})

    result = await fixer.start(
        _failure(classification=None, log="Error: connect ECONNREFUSED 127.0.0.1:5432")
    )

    assert result.state is FixState.EXHAUSTED
    assert result.verdict is FixVerdict.NOT_APPLICABLE
    assert result.attempts == []
    assert scripted.calls_for("ci_fix") == []


@pytest.mark.asyncio
async def test_unknown_model_class_falls_back_to_log_patterns(
    scripted: ScriptedEngine, fixer: CIFixer, sources: dict[str, str]
) -> None:
    scripted.script("ci_classification", {"classification": "cosmic rays"})
    scripted.script("ci_fix", _fix(sources["spec"]))

    result = await fixer.start(_failure(classification=None))

    assert result.classification is FailureClass.ASSERTION
    [request] = scripted.calls_for("ci_classification")
    assert "toBeVisible" in request.messages[1].content


@pytest.mark.asyncio
async def test_agent_reports_diagnosis_failure(
    scripted: ScriptedEngine, fixer: CIFixer
) -> None:
    scripted.script("ci_classification", GatewayFatalError("bad key"))

    output = await fixer.run(CIFixTask(failure=_failure(classification=None)))

    assert output.status == TaskStatus.FAILED
    assert output.result["error_kind"] == "GatewayFatalError"


@pytest.mark.asyncio
async def test_agent_returns_fix(scripted: ScriptedEngine, fixer: CIFixer) -> None:
    output = await fixer.run(CIFixTask(failure=_failure(classification=FailureClass.FLAKY_TEST)))

    assert output.ok
    assert output.result["fix"].job == "e2e"


@pytest.mark.parametrize(
    ("log", "expected"),
    [
        ("SyntaxError: Unexpected token '}'", FailureClass.SYNTAX_ERROR),
        ("Error: Cannot find module 'zod'", FailureClass.DEPENDENCY_MISMATCH),
        ("FATAL: No space left on device", FailureClass.ENVIRONMENT),
        ("test passed on retry #1", FailureClass.FLAKY_TEST),
        ("TimeoutError: waiting for locator('#submit')", FailureClass.SELECTOR_OR_TIMING),
        ("AssertionError: 1 != 2", FailureClass.ASSERTION),
        ("exit code 1", FailureClass.UNKNOWN),
    ],
)
def test_classify_from_log(log: str, expected: FailureClass) -> None:
    assert classify_from_log(log) is expected


def test_log_helpers() -> None:
    assert extract_error_message(_LOG) == "expect(received).toBeVisible()"
    assert extract_error_message("all good") == ""
    assert truncate_log("x" * 10, max_chars=4) == "xxxx"


@pytest.mark.asyncio
async def test_summary_rendering(
    scripted: ScriptedEngine, fixer: CIFixer, sources: dict[str, str]
) -> None:
    scripted.script("ci_fix", _fix(sources["spec"]))
    result = await fixer.start(_failure())

    summary = format_fix_summary(result)

    assert summary.splitlines()[0] == "CI fix for e2e: verifying"
    assert f"Attempt 1 [{_SPEC_PATH}]: awaiting CI - Update expected text" in summary
