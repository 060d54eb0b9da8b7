"""Structured risk and quality assessment of a pull request."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from prqa.utils.serialization import to_jsonable


class RiskLevel(Enum):
    """Severity scale shared by risks, gaps, scenarios and suggestions."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: ``0`` for critical through ``3`` for low."""
        return _RISK_RANK[self]

    @classmethod
    def parse(cls, value: object, default: RiskLevel | None = None) -> RiskLevel:
        """Coerce model output into a level, falling back to *default* (medium)."""
        if isinstance(value, RiskLevel):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.MEDIUM


_RISK_RANK = {
    RiskLevel.CRITICAL: 0,
    RiskLevel.HIGH: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.LOW: 3,
}


class ChangeType(Enum):
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    CONFIG = "config"
    DOCS = "docs"
    MIXED = "mixed"


class ScenarioCategory(Enum):
    """Taxonomy of test scenarios."""

    HAPPY_PATH = "happy_path"
    """Main success flow."""

    SAD_PATH = "sad_path"
    """Expected error flows."""

    EDGE_CASE = "edge_case"
    """Unusual but valid inputs and states."""

    BOUNDARY = "boundary"
    """Limit values (min, max, zero)."""

    SECURITY = "security"
    """Authentication, authorization and injection."""

    PERFORMANCE = "performance"
    """Load, stress and response time."""

    ACCESSIBILITY = "accessibility"
    """Assistive technology and keyboard navigation."""

    INTEGRATION = "integration"
    """Interaction between systems."""

    DATA_INTEGRITY = "data_integrity"
    """Data consistency."""


class TestType(Enum):
    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"
    API = "api"
    VISUAL = "visual"
    PERFORMANCE = "performance"


class MergeRecommendation(Enum):
    """Risk governance outcome for a pull request."""

    MERGE_OK = "merge_ok"
    """No significant risks found."""

    ATTENTION = "attention"
    """Medium or high risks; review before merging."""

    BLOCK = "block"
    """Critical risks; fix before merging."""


@dataclass
class Mitigation:
    """Structured mitigation plan for a risk."""

    preventive: str = ""
    """What to do before release to avoid the problem."""

    detective: str = ""
    """How to notice that it happened."""

    corrective: str = ""
    """How to fix it quickly."""


@dataclass
class RiskAssessment:
    """A single risk identified in the change."""

    level: RiskLevel
    area: str
    title: str
    description: str = ""
    probability: str = ""
    impact: str = ""
    mitigation: Mitigation | str = ""
    tests_required: list[str] = field(default_factory=list)


@dataclass
class TestScenario:
    """A test scenario derived from the change."""

    id: str
    """Stable identifier, ``TC001`` onwards when the model omits one."""

    title: str
    category: ScenarioCategory = ScenarioCategory.HAPPY_PATH
    priority: RiskLevel = RiskLevel.MEDIUM
    preconditions: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    expected_result: str = ""
    test_type: TestType = TestType.E2E
    heuristic: str = ""
    related_risks: list[str] = field(default_factory=list)
    automated: bool = False
    """True when the model already supplied automation code for this scenario."""


@dataclass
class QualityGap:
    """Something missing from the change (validation, handling, docs)."""

    title: str
    severity: RiskLevel = RiskLevel.MEDIUM
    recommendation: str = ""
    risk_if_ignored: str = ""


@dataclass
class TestCoveragePlan:
    """Recommended tests per level."""

    unit: list[str] = field(default_factory=list)
    integration: list[str] = field(default_factory=list)
    e2e: list[str] = field(default_factory=list)
    manual: list[str] = field(default_factory=list)


@dataclass
class AnalysisSummary:
    title: str = "Analysis completed"
    description: str = ""
    impact_areas: list[str] = field(default_factory=list)
    change_type: ChangeType = ChangeType.MIXED


@dataclass
class AnalysisResult:
    """Output of the pull request analyzer."""

    summary: AnalysisSummary
    """Headline, description and impact areas."""

    overall_risk: RiskLevel = RiskLevel.MEDIUM
    """Model-assessed overall risk."""

    risks: list[RiskAssessment] = field(default_factory=list)
    """Individual risks, in model order."""

    scenarios: list[TestScenario] = field(default_factory=list)
    """Taxonomised test scenarios."""

    gaps: list[QualityGap] = field(default_factory=list)
    """Missing validation, handling or documentation."""

    acceptance_criteria: list[str] = field(default_factory=list)
    """Suggested acceptance criteria."""

    test_coverage: TestCoveragePlan = field(default_factory=TestCoveragePlan)
    """Recommended tests per level."""

    risk_score: int = 0
    """Numeric risk score between 0 and 100."""

    merge_recommendation: MergeRecommendation = MergeRecommendation.MERGE_OK
    """Risk governance decision derived from the score."""

    product_impact: str = ""
    """Business-facing translation of the technical risks."""

    changed_files: list[str] = field(default_factory=list)
    """Files touched by the diff."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": to_jsonable(self.summary),
            "overall_risk": self.overall_risk.value,
            "risk_score": self.risk_score,
            "merge_recommendation": self.merge_recommendation.value,
            "product_impact": self.product_impact,
            "risks": to_jsonable(self.risks),
            "scenarios": to_jsonable(self.scenarios),
            "gaps": to_jsonable(self.gaps),
            "acceptance_criteria": list(self.acceptance_criteria),
            "test_coverage": to_jsonable(self.test_coverage),
            "changed_files": list(self.changed_files),
        }
