"""Analyzer agents for prqa."""

from prqa.agents.analyzers.coverage import (
    CoverageAnalysisResult,
    CoverageAnalyzer,
    CoverageSuggestion,
    analyze_coverage,
    heuristic_analysis,
)
from prqa.agents.analyzers.dependencies import (
    DependencyAnalysisResult,
    DependencyAnalysisTask,
    DependencyAnalyzer,
    analyze_dependencies,
)
from prqa.agents.analyzers.pull_request import (
    PRAnalysisTask,
    PullRequestAnalyzer,
    calculate_risk_score,
    determine_merge_recommendation,
)
from prqa.agents.analyzers.requirements import (
    RequirementsAnalysisResult,
    RequirementsAnalysisTask,
    RequirementsAnalyzer,
    RequirementsDocument,
    RequirementsInput,
    validate_requirements_input,
)

__all__ = [
    "CoverageAnalysisResult",
    "CoverageAnalyzer",
    "CoverageSuggestion",
    "DependencyAnalysisResult",
    "DependencyAnalysisTask",
    "DependencyAnalyzer",
    "PRAnalysisTask",
    "PullRequestAnalyzer",
    "RequirementsAnalysisResult",
    "RequirementsAnalysisTask",
    "RequirementsAnalyzer",
    "RequirementsDocument",
    "RequirementsInput",
    "analyze_coverage",
    "analyze_dependencies",
    "calculate_risk_score",
    "determine_merge_recommendation",
    "heuristic_analysis",
    "validate_requirements_input",
]
