"""Coverage report parsing with structural format detection."""

from __future__ import annotations

import logging

from prqa.adapters.coverage.base import (
    BranchCoverage,
    CoverageArtifact,
    CoverageParser,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
    UnrecognizedFormatError,
)
from prqa.adapters.coverage.cobertura import CoberturaParser
from prqa.adapters.coverage.coverage_py import CoveragePyParser
from prqa.adapters.coverage.istanbul import IstanbulParser
from prqa.adapters.coverage.jacoco import JacocoParser
from prqa.adapters.coverage.lcov import LcovParser

__all__ = [
    "BranchCoverage",
    "CoverageParser",
    "CoverageReport",
    "FileCoverage",
    "FunctionCoverage",
    "LineCoverage",
    "UnrecognizedFormatError",
    "get_parsers",
    "parse_coverage_report",
]

logger = logging.getLogger(__name__)

_BOM = "\ufeff"


def get_parsers() -> list[CoverageParser]:
    """Return every registered parser in sniffing order."""
    return [
        CoveragePyParser(),
        IstanbulParser(),
        CoberturaParser(),
        JacocoParser(),
        LcovParser(),
    ]


def parse_coverage_report(raw: bytes | str) -> CoverageReport:
    """Detect the format of *raw* and parse it into a :class:`CoverageReport`.

    Raises:
        UnrecognizedFormatError: If the artifact is not text, matches no
            supported format, or is structurally broken.
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise UnrecognizedFormatError("Coverage artifact is not UTF-8 text") from exc
    else:
        text = raw
    text = text.removeprefix(_BOM)
    if not text.strip() or "\x00" in text:
        raise UnrecognizedFormatError("Coverage artifact is empty or binary")

    artifact = CoverageArtifact(text=text)
    for parser in get_parsers():
        if not parser.sniff(artifact):
            continue
        try:
            report = parser.parse(artifact)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise UnrecognizedFormatError(
                f"Coverage artifact looks like {parser.name} but could not be parsed: {exc}"
            ) from exc
        logger.info("Parsed %s coverage report with %d files", parser.name, len(report.files))
        return report

    raise UnrecognizedFormatError("Coverage artifact does not match any supported format")
