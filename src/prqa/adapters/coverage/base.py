"""Base classes and data models for coverage report parsers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any

from defusedxml import ElementTree
from defusedxml.ElementTree import ParseError as DefusedParseError

if TYPE_CHECKING:
    from xml.etree.ElementTree import Element as XmlElement

_MAX_PERCENT = 100.0


class UnrecognizedFormatError(ValueError):
    """The artifact does not match any supported coverage format."""


def _clamp(value: float) -> float:
    return max(0.0, min(_MAX_PERCENT, value))


@dataclass
class LineCoverage:
    """Coverage data for a single line of code."""

    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this line was executed at least once."""
        return self.execution_count > 0


@dataclass
class FunctionCoverage:
    """Coverage data for a single function."""

    name: str
    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this function was executed at least once."""
        return self.execution_count > 0


@dataclass
class BranchCoverage:
    """Coverage data for the outcomes of one branch point."""

    line_number: int
    branch_id: int
    taken_count: int
    """Number of outcomes that were taken at least once."""

    total_count: int
    """Number of possible outcomes."""

    @property
    def coverage_percentage(self) -> float:
        """Return branch coverage as a percentage (0.0-100.0)."""
        if self.total_count <= 0:
            return _MAX_PERCENT
        return _clamp((self.taken_count / self.total_count) * 100.0)

    @property
    def is_fully_covered(self) -> bool:
        return self.taken_count >= self.total_count


@dataclass
class FileCoverage:
    """Coverage data for a single source file."""

    file_path: str
    lines: list[LineCoverage] = field(default_factory=list)
    functions: list[FunctionCoverage] = field(default_factory=list)
    branches: list[BranchCoverage] = field(default_factory=list)

    @property
    def line_coverage_percentage(self) -> float:
        """Return line coverage percentage (0.0-100.0)."""
        if not self.lines:
            return _MAX_PERCENT
        covered = sum(1 for line in self.lines if line.is_covered)
        return _clamp((covered / len(self.lines)) * 100.0)

    @property
    def function_coverage_percentage(self) -> float:
        """Return function coverage percentage (0.0-100.0)."""
        if not self.functions:
            return _MAX_PERCENT
        covered = sum(1 for func in self.functions if func.is_covered)
        return _clamp((covered / len(self.functions)) * 100.0)

    @property
    def branch_coverage_percentage(self) -> float:
        """Return branch coverage percentage (0.0-100.0)."""
        total_taken = sum(branch.taken_count for branch in self.branches)
        total_count = sum(branch.total_count for branch in self.branches)
        if total_count <= 0:
            return _MAX_PERCENT
        return _clamp((total_taken / total_count) * 100.0)

    @property
    def uncovered_lines(self) -> list[int]:
        """Sorted line numbers that were never executed."""
        return sorted({line.line_number for line in self.lines if not line.is_covered})

    @property
    def partial_branches(self) -> list[BranchCoverage]:
        """Branch points with at least one outcome never taken, by line."""
        return sorted(
            (b for b in self.branches if not b.is_fully_covered),
            key=lambda b: (b.line_number, b.branch_id),
        )


@dataclass
class CoverageReport:
    """Unified coverage report across all files in a project.

    Every supported format is translated into this shape.  Files that the
    artifact does not mention are absent; nothing is zero-filled.
    """

    files: dict[str, FileCoverage] = field(default_factory=dict)
    format: str = ""
    """Name of the parser that produced the report."""

    def get(self, file_path: str) -> FileCoverage | None:
        return self.files.get(file_path)

    @property
    def overall_line_coverage(self) -> float:
        """Return overall line coverage percentage across all files."""
        total_lines = sum(len(file.lines) for file in self.files.values())
        if total_lines == 0:
            return _MAX_PERCENT
        covered_lines = sum(
            sum(1 for line in file.lines if line.is_covered) for file in self.files.values()
        )
        return _clamp((covered_lines / total_lines) * 100.0)

    @property
    def overall_branch_coverage(self) -> float:
        """Return overall branch coverage percentage across all files."""
        total_taken = sum(
            sum(branch.taken_count for branch in file.branches) for file in self.files.values()
        )
        total_count = sum(
            sum(branch.total_count for branch in file.branches) for file in self.files.values()
        )
        if total_count == 0:
            return _MAX_PERCENT
        return _clamp((total_taken / total_count) * 100.0)

    def percentages(self) -> dict[str, dict[str, float]]:
        """Line/branch/function percentages keyed by file path."""
        return {
            path: {
                "line": round(file.line_coverage_percentage, 2),
                "branch": round(file.branch_coverage_percentage, 2),
                "function": round(file.function_coverage_percentage, 2),
            }
            for path, file in sorted(self.files.items())
        }


@dataclass
class CoverageArtifact:
    """A decoded coverage artifact with lazily parsed structured views."""

    text: str

    @cached_property
    def json(self) -> Any:
        """Parsed JSON document, or ``None`` if the text is not JSON."""
        stripped = self.text.lstrip()
        if not stripped.startswith(("{", "[")):
            return None
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return None

    @cached_property
    def xml_root(self) -> XmlElement | None:
        """Parsed XML root element, or ``None`` if the text is not XML."""
        stripped = self.text.lstrip()
        if not stripped.startswith("<"):
            return None
        try:
            return ElementTree.fromstring(stripped)
        except (DefusedParseError, ValueError):
            return None


class CoverageParser(ABC):
    """Recognises and parses one coverage report format.

    Detection is structural: ``sniff`` inspects the artifact's shape, never
    its filename.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Format identifier (e.g. 'lcov', 'istanbul', 'cobertura')."""

    @abstractmethod
    def sniff(self, artifact: CoverageArtifact) -> bool:
        """Return True if *artifact* has this format's structure."""

    @abstractmethod
    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        """Translate the artifact into a :class:`CoverageReport`."""


def int_attr(element: XmlElement, key: str, default: int = 0) -> int:
    value = element.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default
