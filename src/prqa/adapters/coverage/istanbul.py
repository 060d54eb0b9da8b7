"""Istanbul ``coverage-final.json`` parser (Jest, Vitest, nyc)."""

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

_REQUIRED_KEYS = ("statementMap", "s")


class IstanbulParser(CoverageParser):
    """Parse Istanbul's per-file statement/function/branch maps.

    Shape::

        {"/abs/src/file.ts": {"path": ..., "statementMap": {...}, "s": {...},
                               "fnMap": {...}, "f": {...},
                               "branchMap": {...}, "b": {...}}}
    """

    @property
    def name(self) -> str:
        return "istanbul"

    def sniff(self, artifact: CoverageArtifact) -> bool:
        data = artifact.json
        if not isinstance(data, dict) or not data:
            return False
        return all(
            isinstance(entry, dict) and all(key in entry for key in _REQUIRED_KEYS)
            for entry in data.values()
        )

    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        files: dict[str, FileCoverage] = {}
        for file_key, file_data in artifact.json.items():
            file_path = str(file_data.get("path") or file_key)
            files[file_path] = FileCoverage(
                file_path=file_path,
                lines=_parse_lines(file_data),
                functions=_parse_functions(file_data),
                branches=_parse_branches(file_data),
            )
        return CoverageReport(files=files, format=self.name)


def _parse_lines(data: dict[str, Any]) -> list[LineCoverage]:
    """Aggregate statement hits by their starting line."""
    statement_map = data.get("statementMap", {})
    lines: dict[int, int] = {}
    for stmt_id, count in data.get("s", {}).items():
        line = statement_map.get(stmt_id, {}).get("start", {}).get("line")
        if isinstance(line, int):
            lines[line] = lines.get(line, 0) + int(count)
    return [LineCoverage(line_number=ln, execution_count=cnt) for ln, cnt in sorted(lines.items())]


def _parse_functions(data: dict[str, Any]) -> list[FunctionCoverage]:
    fn_map = data.get("fnMap", {})
    functions = []
    for fn_id, count in data.get("f", {}).items():
        fn_info = fn_map.get(fn_id, {})
        line = fn_info.get("loc", {}).get("start", {}).get("line", 0)
        functions.append(
            FunctionCoverage(
                name=str(fn_info.get("name") or f"anonymous_{fn_id}"),
                line_number=int(line),
                execution_count=int(count),
            )
        )
    return functions


def _parse_branches(data: dict[str, Any]) -> list[BranchCoverage]:
    branch_map = data.get("branchMap", {})
    branches = []
    for branch_id, counts in data.get("b", {}).items():
        if not isinstance(counts, list):
            continue
        line = branch_map.get(branch_id, {}).get("loc", {}).get("start", {}).get("line", 0)
        branches.append(
            BranchCoverage(
                line_number=int(line),
                branch_id=int(branch_id) if str(branch_id).isdigit() else 0,
                taken_count=sum(1 for c in counts if c > 0),
                total_count=len(counts),
            )
        )
    return branches
