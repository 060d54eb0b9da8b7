"""Generated test candidates passed between generator, validator and executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath


class TestRole(Enum):
    """Page-object-model role of a generated file."""

    __test__ = False

    PAGE_OBJECT = "page-object"
    SPEC = "spec"
    FIXTURE = "fixture"

    @classmethod
    def parse(cls, value: object) -> TestRole:
        text = str(value or "").strip().lower().replace("_", "-")
        if text in ("page", "page-object", "pageobject", "pom"):
            return cls.PAGE_OBJECT
        if text in ("fixture", "fixtures"):
            return cls.FIXTURE
        return cls.SPEC


_FRAMEWORK_BY_SUFFIX = {
    ".py": "pytest",
    ".ts": "playwright",
    ".tsx": "playwright",
    ".js": "playwright",
    ".jsx": "playwright",
    ".mjs": "playwright",
}


def infer_framework(path: str, default: str = "playwright") -> str:
    """Return the test framework implied by the file extension of *path*."""
    return _FRAMEWORK_BY_SUFFIX.get(PurePosixPath(path).suffix.lower(), default)


@dataclass(frozen=True)
class GeneratedTest:
    """One test artifact proposed by the generator.

    A candidate keeps its ``candidate_id`` across correction rounds, so the
    loop can regenerate exactly the failing ones.
    """

    __test__ = False

    candidate_id: str
    """Stable identifier (``C01``, ``C02``...), unchanged by regeneration."""

    path: str
    """Target path relative to the project root."""

    source: str
    """Complete file content."""

    role: TestRole = TestRole.SPEC
    framework: str = "playwright"
    provenance: tuple[str, ...] = field(default_factory=tuple)
    """Scenario ids (and the analysis they came from) this file covers."""

    round: int = 1
    """Correction round that produced this version of the candidate."""

    @property
    def size(self) -> int:
        return len(self.source.encode("utf-8"))
