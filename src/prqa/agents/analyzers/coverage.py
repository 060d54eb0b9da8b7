"""CoverageAnalyzer agent — maps a coverage artifact onto the files a PR touches.

The analyzer:
1. Parses the artifact with format sniffing (lcov, Istanbul, coverage.py,
   Cobertura, JaCoCo)
2. Matches changed files to report files by path suffix
3. Groups uncovered lines into ranges and flags weak branches and functions
4. Ranks suggestions by risk, then file path, then line number
5. Falls back to a diff heuristic when no artifact is available
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from prqa.adapters.coverage import UnrecognizedFormatError, parse_coverage_report
from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.config import CoverageConfig
from prqa.models.analysis import RiskLevel
from prqa.utils.diff import added_lines, split_file_diffs

if TYPE_CHECKING:
    from prqa.adapters.coverage.base import CoverageReport, FileCoverage

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

CRITICAL_PATHS = (
    "auth",
    "authentication",
    "login",
    "password",
    "token",
    "jwt",
    "oauth",
    "payment",
    "checkout",
    "billing",
    "transaction",
    "stripe",
    "paypal",
    "security",
    "encryption",
    "crypto",
    "hash",
    "database",
    "migration",
    "schema",
    "api",
    "middleware",
    "controller",
)

_SOURCE_RE = re.compile(r"\.(ts|tsx|js|jsx|py|go|java|kt|rb|cs|rs)$")
_TEST_MARKERS = (".test.", ".spec.", "__tests__", "/tests/", "test_")

_FUNCTION_THRESHOLD = 80.0

_COMPLEXITY_PATTERNS: dict[str, re.Pattern[str]] = {
    "conditionals": re.compile(r"if\s*\(|switch\s*\(|\?\s*:|\belif\b|\bif\s+\w"),
    "loops": re.compile(r"for\s*\(|while\s*\(|\.forEach|\.map\(|\.filter\(|\bfor\s+\w+\s+in\b"),
    "error_handling": re.compile(r"try\s*[:{]|catch\s*\(|\.catch\(|throw\s+|\braise\s+|\bexcept\b"),
    "async": re.compile(r"async\s+|await\s+|\.then\(|Promise"),
}
_COMPLEXITY_HIGH = 30
_COMPLEXITY_MEDIUM = 15
_COMPLEXITY_NOTABLE = 20
_ERROR_HANDLING_NOTABLE = 5
_MANY_SOURCE_FILES = 5


# ── Data models ──────────────────────────────────────────────────


@dataclass(frozen=True)
class CoverageSuggestion:
    """One under-tested area of a changed file."""

    priority: RiskLevel
    """HIGH, MEDIUM or LOW; HIGH means touched and uncovered."""

    file: str
    """Changed file path as it appears in the diff."""

    area: str
    """Short label, e.g. ``lines 12-18`` or ``function charge``."""

    reason: str
    """Human-readable justification."""

    start_line: int = 0
    end_line: int = 0
    test_type: str = "unit"

    @property
    def sort_key(self) -> tuple[int, str, int, str]:
        return (self.priority.rank, self.file, self.start_line, self.area)


@dataclass
class HeuristicAnalysis:
    """Coverage estimate derived from the diff alone."""

    estimated_risk: RiskLevel
    critical_paths_impacted: list[str] = field(default_factory=list)
    test_files_found: int = 0
    complexity: dict[str, int] = field(default_factory=dict)
    reasoning: list[str] = field(default_factory=list)


@dataclass
class CoverageAnalysisResult:
    """Output of coverage analysis for one pull request."""

    found: bool
    """True when a coverage artifact was parsed."""

    suggestions: list[CoverageSuggestion] = field(default_factory=list)
    """Ranked and capped suggestions."""

    impacted_files: list[str] = field(default_factory=list)
    """Changed files that have coverage data."""

    file_coverage: dict[str, dict[str, float]] = field(default_factory=dict)
    """Percentages for impacted files only; files absent from the report are absent here."""

    overall_line_coverage: float | None = None
    report_format: str = ""
    heuristic: HeuristicAnalysis | None = None


# ── Public API ───────────────────────────────────────────────────


def is_critical_path(path: str) -> bool:
    lowered = path.lower()
    return any(keyword in lowered for keyword in CRITICAL_PATHS)


def is_test_file(path: str) -> bool:
    lowered = path.lower()
    name = lowered.rsplit("/", 1)[-1]
    return any(marker in lowered for marker in _TEST_MARKERS[:4]) or name.startswith("test_")


def is_source_file(path: str) -> bool:
    return bool(_SOURCE_RE.search(path)) and not is_test_file(path)


def match_report_file(report: CoverageReport, changed_file: str) -> FileCoverage | None:
    """Find the report entry for *changed_file* by path suffix.

    Report paths are often absolute or rooted elsewhere, so a match is an
    exact path, or one path ending with ``/`` plus the other.  Among several
    matches the shortest report path wins, then the lexicographically first.
    """
    target = changed_file.removeprefix("./")
    candidates = [
        path
        for path in report.files
        if path == target or path.endswith("/" + target) or target.endswith("/" + path.lstrip("/"))
    ]
    if not candidates:
        return None
    best = min(candidates, key=lambda p: (len(p), p))
    return report.files[best]


def group_ranges(lines: list[int]) -> list[tuple[int, int]]:
    """Collapse sorted line numbers into inclusive ``(start, end)`` runs."""
    ranges: list[tuple[int, int]] = []
    for line in sorted(set(lines)):
        if ranges and line == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], line)
        else:
            ranges.append((line, line))
    return ranges


def analyze_coverage(
    report: CoverageReport,
    changed_files: list[str],
    *,
    config: CoverageConfig | None = None,
    changed_lines: dict[str, set[int]] | None = None,
) -> CoverageAnalysisResult:
    """Rank under-tested areas of *changed_files* using *report*.

    The result is a pure function of its inputs: the same report and
    changed-file set always yield the same ordered suggestion list.

    Args:
        report: Parsed coverage report.
        changed_files: Files touched by the pull request.
        config: Thresholds; defaults apply when omitted.
        changed_lines: Optional added-line numbers per file; uncovered ranges
            that overlap them are ranked highest.
    """
    cfg = config or CoverageConfig()
    touched = changed_lines or {}
    suggestions: list[CoverageSuggestion] = []
    impacted: list[str] = []
    file_coverage: dict[str, dict[str, float]] = {}

    for changed in sorted(set(changed_files)):
        coverage = match_report_file(report, changed)
        critical = is_critical_path(changed)
        if coverage is None:
            if is_source_file(changed):
                suggestions.append(_missing_data_suggestion(changed, critical=critical))
            continue

        impacted.append(changed)
        file_coverage[changed] = {
            "line": round(coverage.line_coverage_percentage, 2),
            "branch": round(coverage.branch_coverage_percentage, 2),
            "function": round(coverage.function_coverage_percentage, 2),
        }
        suggestions.extend(
            _file_suggestions(
                changed, coverage, cfg, critical=critical, touched=touched.get(changed)
            )
        )

    ranked = sorted(set(suggestions), key=lambda s: s.sort_key)[: cfg.max_suggestions]
    return CoverageAnalysisResult(
        found=True,
        suggestions=ranked,
        impacted_files=impacted,
        file_coverage=file_coverage,
        overall_line_coverage=round(report.overall_line_coverage, 2),
        report_format=report.format,
    )


def heuristic_analysis(
    changed_files: list[str],
    diff: str,
    *,
    config: CoverageConfig | None = None,
) -> CoverageAnalysisResult:
    """Estimate coverage risk from the diff when no artifact exists."""
    cfg = config or CoverageConfig()
    files = sorted(set(changed_files))
    source_files = [f for f in files if is_source_file(f)]
    test_files = [f for f in files if is_test_file(f)]

    suggestions: list[CoverageSuggestion] = []
    critical_paths = [f for f in source_files if is_critical_path(f)]
    for path in critical_paths:
        suggestions.append(
            CoverageSuggestion(
                priority=RiskLevel.HIGH,
                file=path,
                area="critical path",
                reason="File in a sensitive area; requires test coverage",
            )
        )
    for path in source_files:
        if path in critical_paths or _has_matching_test(path, test_files):
            continue
        suggestions.append(
            CoverageSuggestion(
                priority=RiskLevel.MEDIUM,
                file=path,
                area="no matching test",
                reason="No test file changed alongside this source file",
            )
        )

    complexity = {
        name: len(pattern.findall(diff)) for name, pattern in _COMPLEXITY_PATTERNS.items()
    }
    total = sum(complexity.values())
    reasoning: list[str] = []
    if total > _COMPLEXITY_NOTABLE:
        reasoning.append(f"High complexity detected: {total} indicators")
    if complexity["error_handling"] > _ERROR_HANDLING_NOTABLE:
        reasoning.append(
            f"{complexity['error_handling']} error-handling points; sad paths need tests"
        )

    if critical_paths or total > _COMPLEXITY_HIGH:
        risk = RiskLevel.HIGH
        reasoning.append("High risk: critical paths touched or high complexity")
    elif len(source_files) > _MANY_SOURCE_FILES or total > _COMPLEXITY_MEDIUM:
        risk = RiskLevel.MEDIUM
        reasoning.append("Medium risk: many files or moderate complexity")
    else:
        risk = RiskLevel.LOW
        reasoning.append("Low risk: small or well-tested change")

    if source_files and not test_files:
        reasoning.append(f"No test files changed ({len(source_files)} source file(s) changed)")
    elif test_files:
        reasoning.append(f"{len(test_files)} test file(s) changed")

    return CoverageAnalysisResult(
        found=False,
        suggestions=sorted(suggestions, key=lambda s: s.sort_key)[: cfg.max_suggestions],
        impacted_files=source_files,
        heuristic=HeuristicAnalysis(
            estimated_risk=risk,
            critical_paths_impacted=critical_paths,
            test_files_found=len(test_files),
            complexity=complexity,
            reasoning=reasoning,
        ),
    )


def changed_lines_from_diff(diff: str) -> dict[str, set[int]]:
    """Added line numbers per file, for ranking touched-and-uncovered ranges."""
    return {
        path: {line_no for line_no, _ in added_lines(chunk)}
        for path, chunk in split_file_diffs(diff).items()
    }


# ── Agent ────────────────────────────────────────────────────────


class CoverageAnalyzer(BaseAgent):
    """Agent wrapper used by the orchestrator.

    Context keys: ``artifact`` (bytes/str or None), ``changed_files``, ``diff``.
    An unrecognized artifact fails the task; no artifact runs the heuristic.
    """

    def __init__(self, config: CoverageConfig | None = None) -> None:
        self._config = config or CoverageConfig()

    @property
    def name(self) -> str:
        return "coverage_analyzer"

    @property
    def description(self) -> str:
        return "Ranks under-tested areas of the files a pull request touches"

    async def run(self, task: TaskInput) -> TaskOutput:
        artifact = task.context.get("artifact")
        changed_files: list[str] = list(task.context.get("changed_files", []))
        diff: str = task.context.get("diff", "")

        if artifact is None:
            logger.info("No coverage artifact, using heuristic analysis")
            result = heuristic_analysis(changed_files, diff, config=self._config)
            return TaskOutput(status=TaskStatus.COMPLETED, result={"coverage": result})

        try:
            report = parse_coverage_report(artifact)
        except UnrecognizedFormatError as exc:
            logger.warning("Coverage artifact rejected: %s", exc)
            return TaskOutput(status=TaskStatus.FAILED, errors=[f"UnrecognizedFormat: {exc}"])

        result = analyze_coverage(
            report,
            changed_files,
            config=self._config,
            changed_lines=changed_lines_from_diff(diff) if diff else None,
        )
        logger.info(
            "Coverage analysis: %d impacted files, %d suggestions",
            len(result.impacted_files),
            len(result.suggestions),
        )
        return TaskOutput(status=TaskStatus.COMPLETED, result={"coverage": result})


# ── Helpers ──────────────────────────────────────────────────────


def _file_suggestions(
    path: str,
    coverage: FileCoverage,
    cfg: CoverageConfig,
    *,
    critical: bool,
    touched: set[int] | None,
) -> list[CoverageSuggestion]:
    threshold = cfg.critical_threshold if critical else cfg.line_threshold
    line_pct = coverage.line_coverage_percentage
    below = line_pct < threshold
    suggestions: list[CoverageSuggestion] = []

    for start, end in group_ranges(coverage.uncovered_lines):
        overlaps = bool(touched) and any(start <= ln <= end for ln in touched or ())
        priority = RiskLevel.HIGH if overlaps or critical or below else RiskLevel.MEDIUM
        count = end - start + 1
        suggestions.append(
            CoverageSuggestion(
                priority=priority,
                file=path,
                area=f"lines {start}-{end}" if start != end else f"line {start}",
                reason=(
                    f"{count} uncovered line(s)"
                    + (" in changed code" if overlaps else "")
                    + f"; file at {line_pct:.1f}% (min {threshold:.0f}%)"
                ),
                start_line=start,
                end_line=end,
            )
        )

    if coverage.branches and coverage.branch_coverage_percentage < cfg.branch_threshold:
        for branch in coverage.partial_branches:
            suggestions.append(
                CoverageSuggestion(
                    priority=RiskLevel.MEDIUM,
                    file=path,
                    area=f"branch at line {branch.line_number}",
                    reason=(
                        f"{branch.total_count - branch.taken_count} of {branch.total_count} "
                        "outcome(s) never taken; likely untested edge case"
                    ),
                    start_line=branch.line_number,
                    end_line=branch.line_number,
                )
            )

    if coverage.functions and coverage.function_coverage_percentage < _FUNCTION_THRESHOLD:
        for func in coverage.functions:
            if func.is_covered:
                continue
            suggestions.append(
                CoverageSuggestion(
                    priority=RiskLevel.HIGH if critical else RiskLevel.MEDIUM,
                    file=path,
                    area=f"function {func.name}",
                    reason="Function never executed by the test suite",
                    start_line=func.line_number,
                    end_line=func.line_number,
                )
            )

    return suggestions


def _missing_data_suggestion(path: str, *, critical: bool) -> CoverageSuggestion:
    if critical:
        return CoverageSuggestion(
            priority=RiskLevel.MEDIUM,
            file=path,
            area="no coverage data",
            reason="Critical-path file absent from the coverage report",
        )
    return CoverageSuggestion(
        priority=RiskLevel.LOW,
        file=path,
        area="no coverage data",
        reason="File absent from the coverage report",
    )


def _has_matching_test(source: str, test_files: list[str]) -> bool:
    stem = _SOURCE_RE.sub("", source).rsplit("/", 1)[-1]
    for test in test_files:
        name = test.rsplit("/", 1)[-1]
        if stem and stem in name:
            return True
    return False


def suggestion_to_dict(suggestion: CoverageSuggestion) -> dict[str, Any]:
    return {
        "priority": suggestion.priority.value,
        "file": suggestion.file,
        "area": suggestion.area,
        "reason": suggestion.reason,
        "start_line": suggestion.start_line,
        "end_line": suggestion.end_line,
        "test_type": suggestion.test_type,
    }
