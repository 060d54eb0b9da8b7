"""JaCoCo XML report parser."""

from __future__ import annotations

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


class JacocoParser(CoverageParser):
    """Parse ``<report><package><sourcefile><line nr mi ci mb cb/>`` documents.

    Line data lives on ``sourcefile`` elements; methods are read from the
    ``class`` elements of the same package.
    """

    @property
    def name(self) -> str:
        return "jacoco"

    def sniff(self, artifact: CoverageArtifact) -> bool:
        root = artifact.xml_root
        if root is None or root.tag != "report":
            return False
        return root.find(".//package") is not None or root.find("counter") is not None

    def parse(self, artifact: CoverageArtifact) -> CoverageReport:
        root = artifact.xml_root
        files: dict[str, FileCoverage] = {}

        for package in root.iter("package"):
            package_dir = package.get("name", "").replace(".", "/")
            for source in package.findall("sourcefile"):
                source_name = source.get("name", "")
                if not source_name:
                    continue
                file_path = f"{package_dir}/{source_name}" if package_dir else source_name
                coverage = files.setdefault(file_path, FileCoverage(file_path=file_path))
                for line in source.findall("line"):
                    nr = int_attr(line, "nr")
                    coverage.lines.append(
                        LineCoverage(line_number=nr, execution_count=int_attr(line, "ci"))
                    )
                    missed_branches = int_attr(line, "mb")
                    covered_branches = int_attr(line, "cb")
                    if missed_branches + covered_branches > 0:
                        coverage.branches.append(
                            BranchCoverage(
                                line_number=nr,
                                branch_id=len(coverage.branches),
                                taken_count=covered_branches,
                                total_count=missed_branches + covered_branches,
                            )
                        )

            for class_elem in package.findall("class"):
                source_name = class_elem.get("sourcefilename", "")
                file_path = f"{package_dir}/{source_name}" if package_dir else source_name
                coverage = files.get(file_path)
                if coverage is None:
                    continue
                for method in class_elem.findall("method"):
                    covered = 0
                    for counter in method.findall("counter"):
                        if counter.get("type") == "METHOD":
                            covered = int_attr(counter, "covered")
                    coverage.functions.append(
                        FunctionCoverage(
                            name=method.get("name", "method"),
                            line_number=int_attr(method, "line"),
                            execution_count=covered,
                        )
                    )

        return CoverageReport(files=files, format=self.name)
