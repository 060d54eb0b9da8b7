"""PullRequestAnalyzer agent — structured risk and quality assessment of a diff.

This agent:
1. Truncates the diff to the configured size
2. Asks the gateway for risks, scenarios, gaps and acceptance criteria
3. Normalizes the model output into :class:`AnalysisResult`
4. Computes the risk score and merge recommendation locally
5. Falls back to a generated product-impact summary when the model gives none
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.llm.engine import GatewayError, GenerationRequest
from prqa.llm.prompts.pr_analysis import PRAnalysisContext, PRAnalysisPrompt
from prqa.models.analysis import (
    AnalysisResult,
    AnalysisSummary,
    ChangeType,
    MergeRecommendation,
    Mitigation,
    QualityGap,
    RiskAssessment,
    RiskLevel,
    ScenarioCategory,
    TestCoveragePlan,
    TestScenario,
    TestType,
)
from prqa.utils.cache import content_hash
from prqa.utils.diff import truncate_diff
from prqa.utils.payload import as_dict, coerce_enum, dict_list, str_list

if TYPE_CHECKING:
    from prqa.llm.engine import LLMEngine
    from prqa.models.pull_request import PullRequestInfo

logger = logging.getLogger(__name__)

# ── Scoring constants ────────────────────────────────────────────

BASE_SCORES = {
    RiskLevel.CRITICAL: 30,
    RiskLevel.HIGH: 20,
    RiskLevel.MEDIUM: 10,
    RiskLevel.LOW: 0,
}
RISK_WEIGHTS = {
    RiskLevel.CRITICAL: 40,
    RiskLevel.HIGH: 25,
    RiskLevel.MEDIUM: 10,
    RiskLevel.LOW: 3,
}
GAP_WEIGHTS = {
    RiskLevel.CRITICAL: 15,
    RiskLevel.HIGH: 10,
    RiskLevel.MEDIUM: 5,
    RiskLevel.LOW: 2,
}
MAX_RISK_CONTRIBUTION = 50
MAX_GAP_CONTRIBUTION = 15
UNAUTOMATED_CRITICAL_PENALTY = 5
BLOCK_SCORE = 70
ATTENTION_SCORE = 30

_REQUIRED_KEYS = ("summary", "risks")
_UX_MARKERS = ("ux", "usab", "experience", "accessib")


@dataclass
class PRAnalysisTask(TaskInput):
    """Task input for analyzing one pull request."""

    task_type: str = "analyze_pull_request"
    target: str = ""
    pull_request: PullRequestInfo | None = None
    guidance: list[str] = field(default_factory=list)
    """Learned prompt enhancements from past feedback."""

    def __post_init__(self) -> None:
        if not self.target and self.pull_request is not None:
            self.target = f"{self.pull_request.full_name}#{self.pull_request.number}"


class PullRequestAnalyzer(BaseAgent):
    """Turns a diff plus metadata into an :class:`AnalysisResult`."""

    def __init__(
        self,
        llm_engine: LLMEngine,
        *,
        max_diff_chars: int = 15000,
        max_tokens: int = 4096,
    ) -> None:
        self._llm = llm_engine
        self._max_diff_chars = max_diff_chars
        self._max_tokens = max_tokens
        self._prompt = PRAnalysisPrompt()

    @property
    def name(self) -> str:
        return "pull_request_analyzer"

    @property
    def description(self) -> str:
        return "Assesses the risks and quality gaps of a pull request diff"

    async def run(self, task: TaskInput) -> TaskOutput:
        if not isinstance(task, PRAnalysisTask) or task.pull_request is None:
            return TaskOutput(
                status=TaskStatus.FAILED,
                errors=["Task must be a PRAnalysisTask with a pull request"],
            )

        try:
            result = await self.analyze(task.pull_request, guidance=task.guidance)
        except GatewayError as exc:
            logger.error("Pull request analysis failed: %s", exc)
            return TaskOutput.failed(exc)

        return TaskOutput(status=TaskStatus.COMPLETED, result={"analysis": result})

    async def analyze(
        self, pull_request: PullRequestInfo, *, guidance: list[str] | None = None
    ) -> AnalysisResult:
        """Run the analysis; gateway errors propagate to the caller."""
        diff, truncated = truncate_diff(pull_request.diff, self._max_diff_chars)
        changed_files = pull_request.changed_files
        rendered = self._prompt.render(
            PRAnalysisContext(
                title=pull_request.title,
                description=pull_request.body or "No description provided",
                diff=diff,
                changed_files=changed_files,
                truncated=truncated,
            ),
            guidance=guidance,
        )
        if guidance:
            logger.info("Applied %d learning enhancements to prompt", len(guidance))

        logger.info(
            "Analyzing %s (diff %d chars, truncated=%s)",
            pull_request.full_name,
            len(pull_request.diff),
            truncated,
        )
        payload, _ = await self._llm.generate_json(
            GenerationRequest(
                messages=rendered.messages,
                max_tokens=self._max_tokens,
                cache_key=f"{self._prompt.name}:{content_hash(rendered.user_message)}",
                metadata={"prompt": self._prompt.name},
            ),
            required=_REQUIRED_KEYS,
        )

        result = parse_analysis_payload(payload)
        result.changed_files = changed_files
        result.risk_score = calculate_risk_score(result)
        result.merge_recommendation = determine_merge_recommendation(
            result.risk_score, result.overall_risk
        )
        if not result.product_impact:
            result.product_impact = generate_product_impact(result)

        logger.info(
            "Risk score %d, recommendation %s, overall risk %s",
            result.risk_score,
            result.merge_recommendation.value,
            result.overall_risk.value,
        )
        return result


# ── Scoring ──────────────────────────────────────────────────────


def calculate_risk_score(analysis: AnalysisResult) -> int:
    """Score the analysis between 0 and 100.

    The score adds a base for the overall risk level, the weighted risks
    (capped), the weighted gaps (capped) and a penalty when critical
    scenarios have no automation.
    """
    score = BASE_SCORES[analysis.overall_risk]
    score += min(sum(RISK_WEIGHTS[r.level] for r in analysis.risks), MAX_RISK_CONTRIBUTION)
    score += min(sum(GAP_WEIGHTS[g.severity] for g in analysis.gaps), MAX_GAP_CONTRIBUTION)

    critical = [s for s in analysis.scenarios if s.priority is RiskLevel.CRITICAL]
    if critical and any(not s.automated for s in critical):
        score += UNAUTOMATED_CRITICAL_PENALTY

    return max(0, min(100, score))


def determine_merge_recommendation(score: int, overall_risk: RiskLevel) -> MergeRecommendation:
    if overall_risk is RiskLevel.CRITICAL or score >= BLOCK_SCORE:
        return MergeRecommendation.BLOCK
    if overall_risk is RiskLevel.HIGH or score >= ATTENTION_SCORE:
        return MergeRecommendation.ATTENTION
    return MergeRecommendation.MERGE_OK


def generate_product_impact(analysis: AnalysisResult) -> str:
    """Translate technical risks into a short business-facing summary."""
    lines: list[str] = []
    for level, wording in (
        (RiskLevel.CRITICAL, "critical risk(s) that may cause downtime or data loss for users"),
        (RiskLevel.HIGH, "high risk(s) that may affect core features"),
    ):
        matching = [r for r in analysis.risks if r.level is level]
        if not matching:
            continue
        lines.append(f"{len(matching)} {wording}.")
        lines.extend(f"  -> {r.impact}" for r in matching if r.impact)

    ux_gaps = [g for g in analysis.gaps if any(m in g.title.lower() for m in _UX_MARKERS)]
    if ux_gaps:
        lines.append(f"{len(ux_gaps)} user-experience gap(s) detected.")

    if analysis.scenarios:
        automated = sum(1 for s in analysis.scenarios if s.automated)
        total = len(analysis.scenarios)
        lines.append(
            f"Scenario coverage: {automated}/{total} ({round(automated * 100 / total)}%) automated."
        )

    if not lines:
        return "Low-impact change. No significant risk to the product or user experience."
    return "\n".join(lines)


# ── Response normalization ───────────────────────────────────────


def parse_analysis_payload(payload: dict[str, Any]) -> AnalysisResult:
    """Normalize the model's JSON into an :class:`AnalysisResult`.

    Unknown enum values fall back to safe defaults; lists that are not lists
    become empty.
    """
    summary_raw = as_dict(payload.get("summary"))
    coverage_raw = as_dict(payload.get("testCoverage"))
    product_impact = payload.get("productImpact")

    return AnalysisResult(
        summary=AnalysisSummary(
            title=str(summary_raw.get("title") or "Analysis completed"),
            description=str(summary_raw.get("description") or ""),
            impact_areas=str_list(summary_raw.get("impactAreas")),
            change_type=coerce_enum(ChangeType, summary_raw.get("changeType"), ChangeType.MIXED),
        ),
        overall_risk=RiskLevel.parse(payload.get("overallRisk")),
        risks=[_normalize_risk(r) for r in dict_list(payload.get("risks"))],
        scenarios=[
            _normalize_scenario(s, index)
            for index, s in enumerate(dict_list(payload.get("scenarios")))
        ],
        gaps=[_normalize_gap(g) for g in dict_list(payload.get("gaps"))],
        acceptance_criteria=str_list(payload.get("acceptanceCriteria")),
        test_coverage=TestCoveragePlan(
            unit=str_list(coverage_raw.get("unit")),
            integration=str_list(coverage_raw.get("integration")),
            e2e=str_list(coverage_raw.get("e2e")),
            manual=str_list(coverage_raw.get("manual")),
        ),
        product_impact=product_impact if isinstance(product_impact, str) else "",
    )


def _normalize_risk(raw: dict[str, Any]) -> RiskAssessment:
    return RiskAssessment(
        level=RiskLevel.parse(raw.get("level")),
        area=str(raw.get("area") or ""),
        title=str(raw.get("title") or raw.get("area") or ""),
        description=str(raw.get("description") or ""),
        probability=str(raw.get("probability") or ""),
        impact=str(raw.get("impact") or ""),
        mitigation=_normalize_mitigation(raw.get("mitigation")),
        tests_required=str_list(raw.get("testsRequired")),
    )


def _normalize_mitigation(value: Any) -> Mitigation | str:
    if isinstance(value, dict) and any(
        value.get(k) for k in ("preventive", "detective", "corrective")
    ):
        return Mitigation(
            preventive=str(value.get("preventive") or ""),
            detective=str(value.get("detective") or ""),
            corrective=str(value.get("corrective") or ""),
        )
    return str(value or "")


def scenario_id(index: int) -> str:
    return f"TC{index + 1:03d}"


def _normalize_scenario(raw: dict[str, Any], index: int) -> TestScenario:
    automated = as_dict(raw.get("automatedTest"))
    return TestScenario(
        id=str(raw.get("id") or scenario_id(index)),
        title=str(raw.get("title") or ""),
        category=coerce_enum(ScenarioCategory, raw.get("category"), ScenarioCategory.HAPPY_PATH),
        priority=RiskLevel.parse(raw.get("priority")),
        preconditions=str_list(raw.get("preconditions")),
        steps=str_list(raw.get("steps")),
        expected_result=str(raw.get("expectedResult") or ""),
        test_type=coerce_enum(TestType, raw.get("testType"), TestType.E2E),
        heuristic=str(raw.get("heuristic") or ""),
        related_risks=str_list(raw.get("relatedRisks")),
        automated=bool(automated.get("code")),
    )


def _normalize_gap(raw: dict[str, Any]) -> QualityGap:
    return QualityGap(
        title=str(raw.get("title") or ""),
        severity=RiskLevel.parse(raw.get("severity")),
        recommendation=str(raw.get("recommendation") or ""),
        risk_if_ignored=str(raw.get("riskIfIgnored") or ""),
    )

