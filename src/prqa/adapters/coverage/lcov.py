"""LCOV tracefile parser (``lcov.info`` from c8, nyc, gcov, cargo-llvm-cov...)."""

from __future__ import annotations

import re
from dataclasses import dataclass

from prqa.adapters.coverage.base import (
    BranchCoverage,
    CoverageArtifact,
    CoverageParser,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

# LCOV record keys
_LCOV_SF = "SF"
_LCOV_FN = "FN"
_LCOV_FNDA = "FNDA"
_LCOV_DA = "DA"
_LCOV_BRDA = "BRDA"
_LCOV_END = "end_of_record"
_LCOV_DA_PARTS = 2
_LCOV_BRDA_PARTS = 4

_FN_RE = re.compile(r"^(\d+),\s*(.*)$")
_SNIFF_SF_RE = re.compile(r"^SF:.+$", re.MULTILINE)
_SNIFF_DATA_RE = re.compile(r"^(?:DA:\d+,|end_of_record\s*$)", re.MULTILINE)


@dataclass
class _LcovRecordState:
    path: str | None
    fns: list[tuple[int, str]]
    fnda: dict[str, int]
    da: dict[int, int]
    brda: list[tuple[int, int, int, int]]


def _empty_state(path: str | None = None) -> _LcovRecordState:
    return _LcovRecordState(path, [], {}, {}, [])


class LcovParser(CoverageParser):
    """Parse the line-oriented LCOV tracefile format."""

    @property
    def name(self) -> str:
        return "lcov"

    def sniff(self, artifact: CoverageArtifact) -> bool:
        head = artifact.text[:65536]
        return bool(_SNIFF_SF_RE.search(head) and _SNIFF_DATA_RE.search(head))

    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        files: dict[str, FileCoverage] = {}
        state = _empty_state()

        for raw_line in artifact.text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if line == _LCOV_END:
                _flush(files, state)
                state = _empty_state()
                continue
            key, sep, value = line.partition(":")
            if not sep:
                continue
            value = value.strip()
            if key == _LCOV_SF:
                _flush(files, state)
                state = _empty_state(value)
            else:
                _apply_key(key, value, state)

        _flush(files, state)
        return CoverageReport(files=files, format=self.name)


def _apply_key(key: str, value: str, state: _LcovRecordState) -> None:
    if key == _LCOV_FN:
        match = _FN_RE.match(value)
        if match:
            state.fns.append((int(match.group(1)), match.group(2).strip()))
    elif key == _LCOV_FNDA:
        match = _FN_RE.match(value)
        if match:
            state.fnda[match.group(2).strip()] = int(match.group(1))
    elif key == _LCOV_DA:
        parts = value.split(",")
        if len(parts) >= _LCOV_DA_PARTS:
            try:
                line_no = int(parts[0].strip())
                count = int(parts[1].strip())
            except ValueError:
                return
            state.da[line_no] = state.da.get(line_no, 0) + count
    elif key == _LCOV_BRDA:
        parts = value.split(",")
        if len(parts) >= _LCOV_BRDA_PARTS:
            try:
                line_no = int(parts[0].strip())
                block = int(parts[1].strip())
                branch = int(parts[2].strip())
                taken_s = parts[3].strip()
                taken = 0 if taken_s == "-" else int(taken_s)
            except ValueError:
                return
            state.brda.append((line_no, block, branch, taken))


def _flush(files: dict[str, FileCoverage], state: _LcovRecordState) -> None:
    if state.path is None:
        return

    lines = [
        LineCoverage(line_number=ln, execution_count=cnt) for ln, cnt in sorted(state.da.items())
    ]
    functions = [
        FunctionCoverage(name=name, line_number=ln, execution_count=state.fnda.get(name, 0))
        for ln, name in state.fns
    ]

    # Group BRDA outcomes by (line, block) into one branch point each.
    grouped: dict[tuple[int, int], list[int]] = {}
    for line_no, block, _branch, taken in state.brda:
        grouped.setdefault((line_no, block), []).append(taken)
    branches = [
        BranchCoverage(
            line_number=line_no,
            branch_id=block,
            taken_count=sum(1 for t in outcomes if t > 0),
            total_count=len(outcomes),
        )
        for (line_no, block), outcomes in sorted(grouped.items())
    ]

    existing = files.get(state.path)
    if existing is None:
        files[state.path] = FileCoverage(
            file_path=state.path, lines=lines, functions=functions, branches=branches
        )
    else:
        existing.lines.extend(lines)
        existing.functions.extend(functions)
        existing.branches.extend(branches)
