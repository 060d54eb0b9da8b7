"""Tests for the RequirementsAnalyzer agent."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from prqa.agents.analyzers.requirements import (
    Complexity,
    CriterionType,
    GapType,
    RequirementsAnalysisTask,
    RequirementsAnalyzer,
    RequirementsDocument,
    RequirementsInput,
    parse_requirements_payload,
    validate_requirements_input,
)
from prqa.agents.base import TaskStatus
from prqa.llm.engine import GatewayTransientError
from prqa.models.analysis import RiskLevel

if TYPE_CHECKING:
    from conftest import ScriptedEngine

    from prqa.llm.tracked_engine import TrackedLLMEngine

_PAYLOAD = {
    "summary": {"title": "Checkout coupons", "scope": ["cart"], "complexity": "high"},
    "scenarios": [
        {"title": "Valid coupon applies", "suggestedTestType": "E2E", "effort": "low"},
        {"id": "S-2", "title": "Expired coupon", "suggestedTestType": "exploratory"},
    ],
    "acceptanceCriteria": [
        {
            "description": "Discount shows in total",
            "type": "ux",
            "automatable": True,
            "gherkin": {"given": "a cart", "when": "coupon applied", "then": "total drops"},
        }
    ],
    "gaps": [{"title": "Stacking", "type": "ambiguity", "question": "Can coupons stack?"}],
    "risks": [{"title": "Rounding", "severity": "high"}],
}


def test_validation_requires_a_source() -> None:
    assert validate_requirements_input(RequirementsInput()) != []
    assert validate_requirements_input(RequirementsInput(document=RequirementsDocument(" "))) != []
    assert validate_requirements_input(RequirementsInput(diff="+x")) == []
    assert validate_requirements_input(RequirementsInput(requirements="As a user...")) == []


@pytest.mark.asyncio
async def test_analyze_with_document_is_grounded(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine
) -> None:
    scripted.script("requirements_analysis", _PAYLOAD)
    analyzer = RequirementsAnalyzer(tracked)
    source = RequirementsInput(
        document=RequirementsDocument(text="Users can apply one coupon.", name="stories.docx"),
        metadata={"sprint": "42"},
    )

    output = await analyzer.run(RequirementsAnalysisTask(source=source))

    assert output.status == TaskStatus.COMPLETED
    result = output.result["requirements"]
    assert result.grounded_in_document is True
    assert result.summary.complexity is Complexity.HIGH
    assert [s.id for s in result.scenarios] == ["TC001", "S-2"]
    assert result.scenarios[0].suggested_test_type == "e2e"
    assert result.scenarios[1].suggested_test_type == "e2e"
    assert result.acceptance_criteria[0].id == "AC001"
    assert result.acceptance_criteria[0].type is CriterionType.UX
    assert result.acceptance_criteria[0].gherkin is not None
    assert result.gaps[0].type is GapType.AMBIGUITY
    assert result.risks[0].severity is RiskLevel.HIGH

    [request] = scripted.calls_for("requirements_analysis")
    assert "Document (stories.docx)" in request.messages[1].content
    assert "Users can apply one coupon." in request.messages[1].content


@pytest.mark.asyncio
async def test_analyze_from_diff_only_is_not_grounded(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine
) -> None:
    scripted.script("requirements_analysis", _PAYLOAD)
    analyzer = RequirementsAnalyzer(tracked)

    result = await analyzer.analyze(
        RequirementsInput(diff="+applyCoupon(code)", pr_description="Adds coupons")
    )

    assert result.grounded_in_document is False
    [request] = scripted.calls_for("requirements_analysis")
    assert "applyCoupon" in request.messages[1].content


@pytest.mark.asyncio
async def test_empty_input_fails_without_gateway_call(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine
) -> None:
    output = await RequirementsAnalyzer(tracked).run(RequirementsAnalysisTask())

    assert output.status == TaskStatus.FAILED
    assert "requirements source" in output.errors[0]
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_gateway_failure(scripted: ScriptedEngine, tracked: TrackedLLMEngine) -> None:
    scripted.script("requirements_analysis", GatewayTransientError("timeout", retries=3))

    output = await RequirementsAnalyzer(tracked).run(
        RequirementsAnalysisTask(source=RequirementsInput(requirements="As a user..."))
    )

    assert output.status == TaskStatus.FAILED
    assert output.result["error_kind"] == "GatewayTransientError"


def test_parse_payload_defaults() -> None:
    result = parse_requirements_payload({"scenarios": []})
    assert result.summary.title == "Requirements analysis"
    assert result.scenarios == []
    assert result.suggestions == []
