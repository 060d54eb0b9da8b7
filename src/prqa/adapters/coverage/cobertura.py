"""Cobertura XML parser (``coverage xml``, Istanbul cobertura reporter, gcovr)."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from prqa.adapters.coverage.base import (
    BranchCoverage,
    CoverageArtifact,
    CoverageParser,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
    int_attr,
)

if TYPE_CHECKING:
    from xml.etree.ElementTree import Element as XmlElement

_CONDITION_RE = re.compile(r"\((\d+)/(\d+)\)")


class CoberturaParser(CoverageParser):
    """Parse ``<coverage><packages><package><classes><class>`` documents."""

    @property
    def name(self) -> str:
        return "cobertura"

    def sniff(self, artifact: CoverageArtifact) -> bool:
        root = artifact.xml_root
        if root is None or root.tag != "coverage":
            return False
        return root.find("packages") is not None or root.find(".//class") is not None

    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        root = artifact.xml_root
        files: dict[str, FileCoverage] = {}

        for class_elem in root.iter("class"):
            file_path = class_elem.get("filename", "")
            if not file_path:
                continue
            coverage = files.setdefault(file_path, FileCoverage(file_path=file_path))
            lines_elem = class_elem.find("lines")
            if lines_elem is not None:
                _read_lines(lines_elem, coverage)
            for method in class_elem.iter("method"):
                method_lines = [int_attr(ln, "number") for ln in method.iter("line")]
                hits = sum(int_attr(ln, "hits") for ln in method.iter("line"))
                coverage.functions.append(
                    FunctionCoverage(
                        name=method.get("name", "method"),
                        line_number=min(method_lines) if method_lines else 0,
                        execution_count=hits,
                    )
                )

        for coverage in files.values():
            coverage.lines = _merge_lines(coverage.lines)
        return CoverageReport(files=files, format=self.name)


def _read_lines(lines_elem: XmlElement, coverage: FileCoverage) -> None:
    for idx, line in enumerate(lines_elem.findall("line")):
        number = int_attr(line, "number")
        hits = int_attr(line, "hits")
        coverage.lines.append(LineCoverage(line_number=number, execution_count=hits))
        if line.get("branch", "false").lower() != "true":
            continue
        match = _CONDITION_RE.search(line.get("condition-coverage", ""))
        if match:
            coverage.branches.append(
                BranchCoverage(
                    line_number=number,
                    branch_id=idx,
                    taken_count=int(match.group(1)),
                    total_count=int(match.group(2)),
                )
            )


def _merge_lines(lines: list[LineCoverage]) -> list[LineCoverage]:
    """Collapse duplicate line entries (inner classes repeat lines)."""
    merged: dict[int, int] = {}
    for line in lines:
        merged[line.line_number] = max(merged.get(line.line_number, 0), line.execution_count)
    return [LineCoverage(line_number=ln, execution_count=cnt) for ln, cnt in sorted(merged.items())]
