"""RequirementsAnalyzer agent — scenarios, criteria and gaps from requirements.

Works before or alongside implementation.  With written requirements (text
or an extracted document) the scenarios are grounded in them; without any,
they are derived from the pull request description and diff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from prqa.agents.analyzers.pull_request import scenario_id
from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.llm.engine import GatewayError, GenerationRequest, LLMEngine
from prqa.llm.prompts.requirements_analysis import RequirementsAnalysisPrompt, RequirementsContext
from prqa.models.analysis import RiskLevel, ScenarioCategory
from prqa.utils.cache import content_hash
from prqa.utils.diff import truncate_diff
from prqa.utils.payload import as_dict, coerce_enum, dict_list, str_list

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = ("scenarios",)
_MAX_DIFF_CHARS = 8000


class Complexity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GapType(Enum):
    """Kinds of holes found in requirements."""

    MISSING_INFO = "missing_info"
    AMBIGUITY = "ambiguity"
    CONTRADICTION = "contradiction"
    EDGE_CASE = "edge_case"
    DANGEROUS_ASSUMPTION = "dangerous_assumption"
    IMPLICIT_CRITERION = "implicit_criterion"
    UNCLEAR_BEHAVIOR = "unclear_behavior"


class CriterionType(Enum):
    FUNCTIONAL = "functional"
    NON_FUNCTIONAL = "non-functional"
    UX = "ux"
    ACCESSIBILITY = "accessibility"


# ── Data models ──────────────────────────────────────────────────


@dataclass(frozen=True)
class RequirementsDocument:
    """Text already extracted from an attached document."""

    text: str
    name: str = ""


@dataclass
class RequirementsInput:
    """Sources for one requirements analysis; at least one must be non-empty."""

    requirements: str = ""
    document: RequirementsDocument | None = None
    diff: str = ""
    pr_description: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    """Optional project, feature, sprint and priority labels."""


@dataclass
class Gherkin:
    given: str = ""
    when: str = ""
    then: str = ""


@dataclass
class AcceptanceCriterion:
    id: str
    """``AC001`` onwards when the model omits one."""

    description: str
    type: CriterionType = CriterionType.FUNCTIONAL
    automatable: bool = False
    gherkin: Gherkin | None = None


@dataclass
class PreImplementationScenario:
    """A scenario written before (or independent of) the implementation."""

    id: str
    title: str
    category: ScenarioCategory = ScenarioCategory.HAPPY_PATH
    priority: RiskLevel = RiskLevel.MEDIUM
    preconditions: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    expected_result: str = ""
    suggested_test_type: str = "e2e"
    """``unit``, ``integration``, ``e2e`` or ``manual``."""

    test_data: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    effort: Complexity = Complexity.MEDIUM
    heuristic: str = ""


@dataclass
class RequirementRisk:
    title: str
    description: str = ""
    severity: RiskLevel = RiskLevel.MEDIUM
    mitigation: str = ""
    affected_areas: list[str] = field(default_factory=list)


@dataclass
class RequirementGap:
    title: str
    description: str = ""
    type: GapType = GapType.MISSING_INFO
    question: str = ""
    """What to ask the product owner."""

    severity: RiskLevel = RiskLevel.MEDIUM
    recommendation: str = ""


@dataclass
class RequirementsSummary:
    title: str = "Requirements analysis"
    description: str = ""
    scope: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM


@dataclass
class RequirementsAnalysisResult:
    """Output of the requirements analyzer."""

    summary: RequirementsSummary
    scenarios: list[PreImplementationScenario] = field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    risks: list[RequirementRisk] = field(default_factory=list)
    gaps: list[RequirementGap] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    grounded_in_document: bool = False
    """True when written requirements (text or document) were supplied."""


# ── Public API ───────────────────────────────────────────────────


def validate_requirements_input(data: RequirementsInput) -> list[str]:
    """Return problems with *data*; an empty list means it can be analyzed."""
    errors: list[str] = []
    has_document = data.document is not None and bool(data.document.text.strip())
    if not (data.requirements.strip() or has_document or data.diff.strip()):
        errors.append("At least one requirements source is needed (requirements, document or diff)")
    return errors


@dataclass
class RequirementsAnalysisTask(TaskInput):
    """Task input for the requirements analyzer."""

    task_type: str = "analyze_requirements"
    target: str = "requirements"
    source: RequirementsInput = field(default_factory=RequirementsInput)


class RequirementsAnalyzer(BaseAgent):
    """Derives pre-implementation scenarios, acceptance criteria and gaps."""

    def __init__(self, llm_engine: LLMEngine, *, max_tokens: int = 4096) -> None:
        self._llm = llm_engine
        self._max_tokens = max_tokens
        self._prompt = RequirementsAnalysisPrompt()

    @property
    def name(self) -> str:
        return "requirements_analyzer"

    @property
    def description(self) -> str:
        return "Turns requirements into scenarios, acceptance criteria and gaps"

    async def run(self, task: TaskInput) -> TaskOutput:
        if not isinstance(task, RequirementsAnalysisTask):
            return TaskOutput(
                status=TaskStatus.FAILED,
                errors=["Task must be a RequirementsAnalysisTask instance"],
            )

        problems = validate_requirements_input(task.source)
        if problems:
            return TaskOutput(status=TaskStatus.FAILED, errors=problems)

        try:
            result = await self.analyze(task.source)
        except GatewayError as exc:
            logger.error("Requirements analysis failed: %s", exc)
            return TaskOutput.failed(exc)
        return TaskOutput(status=TaskStatus.COMPLETED, result={"requirements": result})

    async def analyze(self, source: RequirementsInput) -> RequirementsAnalysisResult:
        problems = validate_requirements_input(source)
        if problems:
            raise ValueError("; ".join(problems))

        diff, _ = truncate_diff(source.diff, _MAX_DIFF_CHARS)
        document = source.document
        rendered = self._prompt.render(
            RequirementsContext(
                requirements=source.requirements,
                document_text=document.text if document else "",
                document_name=document.name if document else "",
                diff=diff,
                pr_description=source.pr_description,
                metadata=dict(source.metadata),
            )
        )
        grounded = bool(source.requirements.strip() or (document and document.text.strip()))
        logger.info(
            "Analyzing requirements (text=%s, document=%s, diff=%s)",
            bool(source.requirements),
            document is not None,
            bool(source.diff),
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
        result = parse_requirements_payload(payload)
        result.grounded_in_document = grounded
        logger.info(
            "Requirements analysis: %d scenarios, %d criteria, %d risks, %d gaps",
            len(result.scenarios),
            len(result.acceptance_criteria),
            len(result.risks),
            len(result.gaps),
        )
        return result


# ── Response normalization ───────────────────────────────────────


def parse_requirements_payload(payload: dict[str, Any]) -> RequirementsAnalysisResult:
    summary = as_dict(payload.get("summary"))
    return RequirementsAnalysisResult(
        summary=RequirementsSummary(
            title=str(summary.get("title") or "Requirements analysis"),
            description=str(summary.get("description") or ""),
            scope=str_list(summary.get("scope")),
            complexity=coerce_enum(Complexity, summary.get("complexity"), Complexity.MEDIUM),
        ),
        scenarios=[
            _normalize_scenario(raw, index)
            for index, raw in enumerate(dict_list(payload.get("scenarios")))
        ],
        acceptance_criteria=[
            _normalize_criterion(raw, index)
            for index, raw in enumerate(dict_list(payload.get("acceptanceCriteria")))
        ],
        risks=[
            RequirementRisk(
                title=str(raw.get("title") or ""),
                description=str(raw.get("description") or ""),
                severity=RiskLevel.parse(raw.get("severity")),
                mitigation=str(raw.get("mitigation") or ""),
                affected_areas=str_list(raw.get("affectedAreas")),
            )
            for raw in dict_list(payload.get("risks"))
        ],
        gaps=[
            RequirementGap(
                title=str(raw.get("title") or ""),
                description=str(raw.get("description") or ""),
                type=coerce_enum(GapType, raw.get("type"), GapType.MISSING_INFO),
                question=str(raw.get("question") or ""),
                severity=RiskLevel.parse(raw.get("severity")),
                recommendation=str(raw.get("recommendation") or ""),
            )
            for raw in dict_list(payload.get("gaps"))
        ],
        suggestions=str_list(payload.get("suggestions")),
    )


def _normalize_scenario(raw: dict[str, Any], index: int) -> PreImplementationScenario:
    test_type = str(raw.get("suggestedTestType") or "e2e").lower()
    if test_type not in ("unit", "integration", "e2e", "manual"):
        test_type = "e2e"
    return PreImplementationScenario(
        id=str(raw.get("id") or scenario_id(index)),
        title=str(raw.get("title") or ""),
        category=coerce_enum(ScenarioCategory, raw.get("category"), ScenarioCategory.HAPPY_PATH),
        priority=RiskLevel.parse(raw.get("priority")),
        preconditions=str_list(raw.get("preconditions")),
        steps=str_list(raw.get("steps")),
        expected_result=str(raw.get("expectedResult") or ""),
        suggested_test_type=test_type,
        test_data=str_list(raw.get("testData")),
        dependencies=str_list(raw.get("dependencies")),
        effort=coerce_enum(Complexity, raw.get("effort"), Complexity.MEDIUM),
        heuristic=str(raw.get("heuristic") or ""),
    )


def _normalize_criterion(raw: dict[str, Any], index: int) -> AcceptanceCriterion:
    gherkin_raw = raw.get("gherkin")
    gherkin = None
    if isinstance(gherkin_raw, dict):
        gherkin = Gherkin(
            given=str(gherkin_raw.get("given") or ""),
            when=str(gherkin_raw.get("when") or ""),
            then=str(gherkin_raw.get("then") or ""),
        )
    return AcceptanceCriterion(
        id=str(raw.get("id") or f"AC{index + 1:03d}"),
        description=str(raw.get("description") or ""),
        type=coerce_enum(CriterionType, raw.get("type"), CriterionType.FUNCTIONAL),
        automatable=bool(raw.get("automatable")),
        gherkin=gherkin,
    )
