"""Tests for the heuristic DependencyAnalyzer."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from prqa.agents.analyzers.dependencies import (
    ChangeKind,
    DependencyAnalysisTask,
    DependencyAnalyzer,
    analyze_dependencies,
    compare_versions,
    detect_package_manager,
    is_dependency_file,
    is_major_bump,
)
from prqa.agents.base import TaskInput, TaskStatus
from prqa.models.analysis import RiskLevel

if TYPE_CHECKING:
    from prqa.models.pull_request import PullRequestInfo

_REQUIREMENTS_DIFF = """\
diff --git a/requirements.txt b/requirements.txt
--- a/requirements.txt
+++ b/requirements.txt
@@ -1,3 +1,3 @@
-django==4.2.0
+django==3.2.0
-requests>=2.0
+stripe==7.0.0
 flask==2.0
"""

_PYPROJECT_DIFF = """\
diff --git a/pyproject.toml b/pyproject.toml
--- a/pyproject.toml
+++ b/pyproject.toml
@@ -5,6 +5,7 @@
 dependencies = [
-    "httpx>=0.25",
+    "httpx>=1.0",
+    "rich>=13",
 ]
"""


def _many_added_diff(count: int) -> str:
    entries = "\n".join(f'+    "lib-{i}": "^1.0.0",' for i in range(count))
    return (
        "diff --git a/package.json b/package.json\n"
        "--- a/package.json\n"
        "+++ b/package.json\n"
        "@@ -1,4 +1,10 @@\n"
        '   "devDependencies": {\n'
        '+    "@types/node": "^20.0.0",\n'
        f"{entries}\n"
        "   }\n"
    )


def test_package_json_changes(pull_request: PullRequestInfo) -> None:
    result = analyze_dependencies(pull_request.diff)

    assert result.has_changes
    assert result.package_manager == "npm"
    by_name = {c.name: c for c in result.changes}
    assert set(by_name) == {"express", "jsonwebtoken"}
    assert by_name["express"].kind is ChangeKind.UPGRADED
    assert by_name["express"].old_version == "^4.18.0"
    assert by_name["jsonwebtoken"].kind is ChangeKind.ADDED
    assert by_name["jsonwebtoken"].is_critical
    assert result.summary.critical_changes == 2

    titles = [r.title for r in result.risks]
    assert "Critical package changed: express" in titles
    assert "Potential breaking changes" in titles
    assert result.highest_risk is RiskLevel.HIGH


def test_requirements_txt_changes() -> None:
    result = analyze_dependencies(_REQUIREMENTS_DIFF)

    assert result.package_manager == "pip"
    kinds = {c.name: c.kind for c in result.changes}
    assert kinds == {
        "django": ChangeKind.DOWNGRADED,
        "requests": ChangeKind.REMOVED,
        "stripe": ChangeKind.ADDED,
    }
    titles = {r.title for r in result.risks}
    assert {"Production packages removed", "Version downgrade"} <= titles
    assert result.highest_risk is RiskLevel.CRITICAL


def test_pyproject_changes() -> None:
    result = analyze_dependencies(_PYPROJECT_DIFF)

    kinds = {c.name: c.kind for c in result.changes}
    assert kinds == {"httpx": ChangeKind.UPGRADED, "rich": ChangeKind.ADDED}
    breaking = [r for r in result.risks if r.title == "Potential breaking changes"]
    assert breaking[0].affected_packages == ["httpx"]


def test_many_added_dependencies_and_type_stubs_skipped() -> None:
    result = analyze_dependencies(_many_added_diff(6))

    assert all(not c.name.startswith("@types/") for c in result.changes)
    assert all(c.category == "development" for c in result.changes)
    assert any(r.title == "Many dependencies added" for r in result.risks)


def test_diff_without_manifests() -> None:
    diff = "diff --git a/src/app.py b/src/app.py\n+++ b/src/app.py\n+print('hi')\n"
    result = analyze_dependencies(diff)
    assert result.has_changes is False
    assert result.highest_risk is None


@pytest.mark.parametrize(
    ("old", "new", "expected"),
    [
        ("^1.2.3", "^1.3.0", ChangeKind.UPGRADED),
        ("==2.0", ">=1.9", ChangeKind.DOWNGRADED),
        ("1.2", "1.2.0", ChangeKind.CHANGED),
    ],
)
def test_compare_versions(old: str, new: str, expected: ChangeKind) -> None:
    assert compare_versions(old, new) is expected


def test_major_bump() -> None:
    assert is_major_bump("^4.18.0", "^5.0.0")
    assert not is_major_bump("^4.18.0", "^4.19.0")
    assert not is_major_bump("latest", "^5.0.0")


def test_manifest_detection() -> None:
    assert is_dependency_file("services/api/requirements-dev.txt")
    assert is_dependency_file("go.mod")
    assert not is_dependency_file("src/package.ts")
    assert detect_package_manager(["README.md", "Cargo.lock"]) == "cargo"


@pytest.mark.asyncio
async def test_agent_makes_no_gateway_calls(pull_request: PullRequestInfo) -> None:
    agent = DependencyAnalyzer()
    output = await agent.run(DependencyAnalysisTask(diff=pull_request.diff))

    assert output.status == TaskStatus.COMPLETED
    assert output.result["dependencies"].has_changes


@pytest.mark.asyncio
async def test_agent_rejects_wrong_task() -> None:
    output = await DependencyAnalyzer().run(TaskInput(task_type="x", target="y"))
    assert output.status == TaskStatus.FAILED
