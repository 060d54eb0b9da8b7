"""coverage.py ``coverage json`` parser."""

from __future__ import annotations

from typing import Any

from prqa.adapters.coverage.base import (
    BranchCoverage,
    CoverageArtifact,
    CoverageParser,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

_LINE_KEYS = ("executed_lines", "missing_lines")
_BRANCH_PAIR = 2


class CoveragePyParser(CoverageParser):
    """Parse coverage.py JSON output.

    Shape::

        {"meta": {...},
         "files": {"src/app.py": {"executed_lines": [...], "missing_lines": [...],
                                  "executed_branches": [[1, 2], ...],
                                  "missing_branches": [[1, -1], ...]}},
         "totals": {...}}
    """

    @property
    def name(self) -> str:
        return "coverage.py"

    def sniff(self, artifact: CoverageArtifact) -> bool:
        data = artifact.json
        if not isinstance(data, dict):
            return False
        files = data.get("files")
        if not isinstance(files, dict):
            return False
        return all(
            isinstance(entry, dict) and any(key in entry for key in _LINE_KEYS)
            for entry in files.values()
        )

    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        files: dict[str, FileCoverage] = {}
        for file_path, file_data in artifact.json["files"].items():
            files[file_path] = FileCoverage(
                file_path=file_path,
                lines=_parse_lines(file_data),
                functions=_parse_functions(file_data),
                branches=_parse_branches(file_data),
            )
        return CoverageReport(files=files, format=self.name)


def _parse_lines(data: dict[str, Any]) -> list[LineCoverage]:
    executed = set(data.get("executed_lines", []))
    missing = set(data.get("missing_lines", []))
    return [
        LineCoverage(line_number=ln, execution_count=1 if ln in executed else 0)
        for ln in sorted(executed | missing)
    ]


def _parse_functions(data: dict[str, Any]) -> list[FunctionCoverage]:
    """Read the per-function regions written by coverage.py 7.5+."""
    functions = []
    for func_name, func_info in data.get("functions", {}).items():
        if not func_name or not isinstance(func_info, dict):
            continue
        executed = func_info.get("executed_lines", [])
        lines = sorted(set(executed) | set(func_info.get("missing_lines", [])))
        functions.append(
            FunctionCoverage(
                name=func_name,
                line_number=lines[0] if lines else 0,
                execution_count=1 if executed else 0,
            )
        )
    return functions


def _parse_branches(data: dict[str, Any]) -> list[BranchCoverage]:
    """Group executed/missing arcs by their source line."""
    outcomes: dict[int, list[bool]] = {}
    for key, taken in (("executed_branches", True), ("missing_branches", False)):
        for arc in data.get(key, []):
            if isinstance(arc, list) and len(arc) == _BRANCH_PAIR:
                outcomes.setdefault(int(arc[0]), []).append(taken)
    return [
        BranchCoverage(
            line_number=line,
            branch_id=idx,
            taken_count=sum(1 for t in results if t),
            total_count=len(results),
        )
        for idx, (line, results) in enumerate(sorted(outcomes.items()))
    ]
