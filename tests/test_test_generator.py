"""Tests for the TestGenerator agent."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from prqa.agents.analyzers.pull_request import parse_analysis_payload
from prqa.agents.base import TaskStatus
from prqa.agents.builders.test_generator import (
    TestGenerationTask,
    TestGenerator,
    select_scenarios,
)
from prqa.agents.validators.test_validator import validate_test
from prqa.llm.engine import GatewayFatalError
from prqa.models.analysis import RiskLevel, TestScenario, TestType
from prqa.models.generated_test import TestRole

if TYPE_CHECKING:
    from conftest import ScriptedEngine

    from prqa.llm.tracked_engine import TrackedLLMEngine
    from prqa.models.analysis import AnalysisResult
    from prqa.models.pull_request import PullRequestInfo


@pytest.fixture
def analysis(analysis_payload: dict[str, Any]) -> AnalysisResult:
    return parse_analysis_payload(analysis_payload)


def test_select_scenarios_keeps_e2e_and_high_priority() -> None:
    scenarios = [
        TestScenario(id="TC001", title="a", test_type=TestType.UNIT, priority=RiskLevel.LOW),
        TestScenario(id="TC002", title="b", test_type=TestType.UNIT, priority=RiskLevel.CRITICAL),
        TestScenario(id="TC003", title="c", test_type=TestType.E2E, priority=RiskLevel.LOW),
        TestScenario(id="TC004", title="d", test_type=TestType.API, priority=RiskLevel.HIGH),
    ]

    assert [s.id for s in select_scenarios(scenarios, 8)] == ["TC002", "TC003", "TC004"]
    assert [s.id for s in select_scenarios(scenarios, 2)] == ["TC002", "TC003"]


@pytest.mark.asyncio
async def test_generate_lays_out_candidates(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
    generation_payload: dict[str, Any],
) -> None:
    scripted.script("test_generation", generation_payload)
    generator = TestGenerator(tracked)

    result = await generator.generate(pull_request, analysis)

    assert result.scenario_ids == ["TC001", "TC-LOCK"]
    assert result.dependencies == ["@playwright/test"]
    assert [(c.candidate_id, c.path, c.role) for c in result.candidates] == [
        ("C01", "tests/e2e/pages/LoginPage.ts", TestRole.PAGE_OBJECT),
        ("C02", "tests/e2e/fixtures/users.ts", TestRole.FIXTURE),
        ("C03", "tests/e2e/tests/lockout.spec.ts", TestRole.SPEC),
    ]
    assert all(c.framework == "playwright" and c.round == 1 for c in result.candidates)
    assert result.candidates[0].provenance == ("TC001", "TC-LOCK")

    [request] = scripted.calls_for("test_generation")
    user = request.messages[1].content
    assert "### TC-LOCK: Sixth failure locks" in user
    assert "Page objects: tests/e2e/pages" in user


@pytest.mark.asyncio
async def test_generate_sanitizes_paths_and_skips_bad_files(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
    sources: dict[str, str],
) -> None:
    scripted.script(
        "test_generation",
        {
            "files": [
                {"path": "../../etc/evil.spec.ts", "content": sources["spec"]},
                {"path": "qa/tests/evil.spec.ts", "content": sources["spec"]},
                {"path": "qa/tests/nested/ok.spec.ts", "content": sources["spec"]},
                {"path": "tests/test_api.py", "content": "def test_api():\n    assert True\n"},
                {"path": "no-content.ts"},
                {"content": "orphan"},
            ]
        },
    )
    generator = TestGenerator(tracked, output_dir="/qa/")

    result = await generator.generate(pull_request, analysis)

    assert [c.path for c in result.candidates] == [
        "qa/tests/evil.spec.ts",
        "qa/tests/nested/ok.spec.ts",
        "qa/tests/test_api.py",
    ]
    assert result.candidates[0].provenance == ("TC001",)
    assert result.candidates[2].framework == "pytest"


@pytest.mark.asyncio
async def test_no_qualifying_scenarios_skips_gateway(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
) -> None:
    for scenario in analysis.scenarios:
        scenario.test_type = TestType.UNIT
        scenario.priority = RiskLevel.LOW

    result = await TestGenerator(tracked).generate(pull_request, analysis)

    assert result.candidates == []
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_guidance_is_appended_to_prompt(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
    generation_payload: dict[str, Any],
) -> None:
    scripted.script("test_generation", generation_payload)

    await TestGenerator(tracked).generate(
        pull_request, analysis, guidance=["Prefer role-based locators"]
    )

    [request] = scripted.calls_for("test_generation")
    assert "Prefer role-based locators" in request.messages[-1].content


@pytest.mark.asyncio
async def test_regenerate_keeps_identity(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
    generation_payload: dict[str, Any],
    sources: dict[str, str],
) -> None:
    fixed = sources["spec_missing_expect"].replace("{ test }", "{ test, expect }")
    scripted.script("test_generation", generation_payload)
    scripted.script("test_regeneration", {"path": "whatever.ts", "content": fixed})
    generator = TestGenerator(tracked)
    broken = (await generator.generate(pull_request, analysis)).candidates[2]
    validation = validate_test(broken)

    again = await generator.regenerate(broken, validation, ["add the import"], round=2)

    assert (again.candidate_id, again.path, again.role) == (broken.candidate_id, broken.path,
                                                             broken.role)
    assert again.round == 2
    assert again.source == fixed
    [request] = scripted.calls_for("test_regeneration")
    assert request.metadata["round"] == 2
    assert "'expect' is used but never imported" in request.messages[1].content
    assert "add the import" in request.messages[1].content


# ── Agent ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_requires_analysis(
    tracked: TrackedLLMEngine, pull_request: PullRequestInfo
) -> None:
    output = await TestGenerator(tracked).run(TestGenerationTask(pull_request=pull_request))

    assert output.status == TaskStatus.FAILED
    assert "completed analysis" in output.errors[0]


@pytest.mark.asyncio
async def test_run_reports_gateway_failure(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
) -> None:
    scripted.script("test_generation", GatewayFatalError("quota exceeded"))

    output = await TestGenerator(tracked).run(
        TestGenerationTask(pull_request=pull_request, analysis=analysis)
    )

    assert output.status == TaskStatus.FAILED
    assert output.result["error_kind"] == "GatewayFatalError"


@pytest.mark.asyncio
async def test_run_returns_generation(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    pull_request: PullRequestInfo,
    analysis: AnalysisResult,
    generation_payload: dict[str, Any],
) -> None:
    scripted.script("test_generation", generation_payload)

    output = await TestGenerator(tracked).run(
        TestGenerationTask(pull_request=pull_request, analysis=analysis)
    )

    assert output.ok
    assert len(output.result["generation"].candidates) == 3
