"""DependencyAnalyzer agent — risk of dependency changes in a diff.

A deterministic heuristic: manifest diffs are parsed line by line and
compared against a table of sensitive packages.  No gateway calls are made.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.models.analysis import RiskLevel
from prqa.utils.diff import extract_changed_files, split_file_diffs

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

CRITICAL_PACKAGES: dict[str, tuple[str, RiskLevel]] = {
    # Authentication and security
    "jsonwebtoken": ("JWT authentication", RiskLevel.HIGH),
    "bcrypt": ("Password hashing", RiskLevel.CRITICAL),
    "bcryptjs": ("Password hashing", RiskLevel.CRITICAL),
    "passport": ("Authentication", RiskLevel.HIGH),
    "passport-jwt": ("JWT authentication", RiskLevel.HIGH),
    "express-session": ("Sessions", RiskLevel.HIGH),
    "helmet": ("HTTP security headers", RiskLevel.MEDIUM),
    "cors": ("CORS", RiskLevel.MEDIUM),
    "crypto-js": ("Cryptography", RiskLevel.CRITICAL),
    "node-forge": ("Cryptography", RiskLevel.CRITICAL),
    "pyjwt": ("JWT authentication", RiskLevel.HIGH),
    "cryptography": ("Cryptography", RiskLevel.CRITICAL),
    "passlib": ("Password hashing", RiskLevel.CRITICAL),
    # Payments
    "stripe": ("Stripe payments", RiskLevel.CRITICAL),
    "paypal": ("PayPal payments", RiskLevel.CRITICAL),
    "@stripe/stripe-js": ("Stripe payments", RiskLevel.CRITICAL),
    "braintree": ("Braintree payments", RiskLevel.CRITICAL),
    # Database
    "pg": ("PostgreSQL driver", RiskLevel.HIGH),
    "mysql2": ("MySQL driver", RiskLevel.HIGH),
    "mongoose": ("MongoDB ODM", RiskLevel.HIGH),
    "prisma": ("Prisma ORM", RiskLevel.HIGH),
    "@prisma/client": ("Prisma ORM", RiskLevel.HIGH),
    "typeorm": ("TypeORM", RiskLevel.HIGH),
    "sequelize": ("Sequelize ORM", RiskLevel.HIGH),
    "knex": ("Query builder", RiskLevel.MEDIUM),
    "sqlalchemy": ("SQLAlchemy ORM", RiskLevel.HIGH),
    "psycopg2": ("PostgreSQL driver", RiskLevel.HIGH),
    "psycopg": ("PostgreSQL driver", RiskLevel.HIGH),
    "alembic": ("Schema migrations", RiskLevel.HIGH),
    # Core frameworks
    "express": ("Web framework", RiskLevel.HIGH),
    "fastify": ("Web framework", RiskLevel.HIGH),
    "next": ("Next.js framework", RiskLevel.HIGH),
    "react": ("React UI", RiskLevel.MEDIUM),
    "react-dom": ("React DOM", RiskLevel.MEDIUM),
    "vue": ("Vue UI", RiskLevel.MEDIUM),
    "django": ("Web framework", RiskLevel.HIGH),
    "flask": ("Web framework", RiskLevel.HIGH),
    "fastapi": ("Web framework", RiskLevel.HIGH),
    # Validation
    "zod": ("Schema validation", RiskLevel.MEDIUM),
    "joi": ("Schema validation", RiskLevel.MEDIUM),
    "yup": ("Schema validation", RiskLevel.MEDIUM),
    "pydantic": ("Schema validation", RiskLevel.MEDIUM),
    # HTTP clients
    "axios": ("HTTP client", RiskLevel.MEDIUM),
    "node-fetch": ("HTTP client", RiskLevel.MEDIUM),
    "requests": ("HTTP client", RiskLevel.MEDIUM),
    "httpx": ("HTTP client", RiskLevel.MEDIUM),
    # Queues and jobs
    "bull": ("Job queue", RiskLevel.HIGH),
    "bullmq": ("Job queue", RiskLevel.HIGH),
    "agenda": ("Job scheduling", RiskLevel.MEDIUM),
    "celery": ("Job queue", RiskLevel.HIGH),
}

DEPENDENCY_FILES: tuple[tuple[str, str], ...] = (
    ("package.json", "npm"),
    ("package-lock.json", "npm"),
    ("yarn.lock", "yarn"),
    ("pnpm-lock.yaml", "pnpm"),
    ("requirements.txt", "pip"),
    ("pyproject.toml", "pip"),
    ("Pipfile", "pip"),
    ("Pipfile.lock", "pip"),
    ("go.mod", "go"),
    ("go.sum", "go"),
    ("Cargo.toml", "cargo"),
    ("Cargo.lock", "cargo"),
)

MANY_ADDED_THRESHOLD = 5

_REQUIREMENTS_RE = re.compile(r"(^|/)requirements[^/]*\.txt$")
_PACKAGE_JSON_ENTRY_RE = re.compile(r'^([+-])\s*"([^"]+)":\s*"([^"]*)"')
_PACKAGE_JSON_SECTION_RE = re.compile(
    r'"(dependencies|devDependencies|peerDependencies|optionalDependencies)"\s*:\s*\{'
)
_REQUIREMENT_LINE_RE = re.compile(r"^([+-])\s*([A-Za-z0-9_][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*(.*)$")
_PYPROJECT_ENTRY_RE = re.compile(
    r"""^([+-])\s*["']([A-Za-z0-9_][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*([^"';]*)"""
)
_PYPROJECT_ARRAY_RE = re.compile(r"^([\w.-]+)\s*=\s*\[\s*$")
_VERSION_PREFIX_RE = re.compile(r"[\^~>=<!\s]")
_VERSION_NUMBER_RE = re.compile(r"\d+")

_PACKAGE_JSON_CATEGORIES = {
    "dependencies": "production",
    "devDependencies": "development",
    "peerDependencies": "peer",
    "optionalDependencies": "optional",
}


# ── Data models ──────────────────────────────────────────────────


class ChangeKind(Enum):
    ADDED = "added"
    REMOVED = "removed"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CHANGED = "changed"


@dataclass
class DependencyChange:
    """One package whose declaration changed."""

    name: str
    kind: ChangeKind
    old_version: str = ""
    new_version: str = ""
    category: str = "production"
    """``production``, ``development``, ``peer`` or ``optional``."""

    manifest: str = ""
    is_critical: bool = False
    reason: str = ""


@dataclass
class DependencyRisk:
    level: RiskLevel
    title: str
    description: str
    affected_packages: list[str] = field(default_factory=list)
    recommendation: str = ""


@dataclass
class DependencySummary:
    added: int = 0
    removed: int = 0
    upgraded: int = 0
    downgraded: int = 0
    critical_changes: int = 0


@dataclass
class DependencyAnalysisResult:
    """Output of the dependency analyzer."""

    has_changes: bool
    package_manager: str = "unknown"
    changes: list[DependencyChange] = field(default_factory=list)
    risks: list[DependencyRisk] = field(default_factory=list)
    summary: DependencySummary = field(default_factory=DependencySummary)

    @property
    def highest_risk(self) -> RiskLevel | None:
        if not self.risks:
            return None
        return min((r.level for r in self.risks), key=lambda level: level.rank)


# ── Public API ───────────────────────────────────────────────────


def is_dependency_file(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    return any(name == manifest for manifest, _ in DEPENDENCY_FILES) or bool(
        _REQUIREMENTS_RE.search(path)
    )


def detect_package_manager(files: list[str]) -> str:
    for path in files:
        name = path.rsplit("/", 1)[-1]
        if _REQUIREMENTS_RE.search(path):
            return "pip"
        for manifest, manager in DEPENDENCY_FILES:
            if name == manifest:
                return manager
    return "unknown"


def analyze_dependencies(
    diff: str, changed_files: list[str] | None = None
) -> DependencyAnalysisResult:
    """Parse manifest changes out of *diff* and rate their risk."""
    files = changed_files if changed_files is not None else extract_changed_files(diff)
    manifests = [f for f in files if is_dependency_file(f)]
    if not manifests:
        return DependencyAnalysisResult(has_changes=False)

    changes: list[DependencyChange] = []
    for path, chunk in split_file_diffs(diff).items():
        name = path.rsplit("/", 1)[-1]
        if name == "package.json":
            changes.extend(_parse_package_json_diff(path, chunk))
        elif _REQUIREMENTS_RE.search(path):
            changes.extend(_parse_requirements_diff(path, chunk))
        elif name == "pyproject.toml":
            changes.extend(_parse_pyproject_diff(path, chunk))

    risks = identify_dependency_risks(changes)
    summary = DependencySummary(
        added=sum(1 for c in changes if c.kind is ChangeKind.ADDED),
        removed=sum(1 for c in changes if c.kind is ChangeKind.REMOVED),
        upgraded=sum(1 for c in changes if c.kind is ChangeKind.UPGRADED),
        downgraded=sum(1 for c in changes if c.kind is ChangeKind.DOWNGRADED),
        critical_changes=sum(1 for c in changes if c.is_critical),
    )
    package_manager = detect_package_manager(manifests)
    logger.info(
        "Dependency analysis (%s): %d changes, %d risks, %d critical",
        package_manager,
        len(changes),
        len(risks),
        summary.critical_changes,
    )
    return DependencyAnalysisResult(
        has_changes=True,
        package_manager=package_manager,
        changes=changes,
        risks=risks,
        summary=summary,
    )


def compare_versions(old: str, new: str) -> ChangeKind:
    """Classify a version change as upgraded, downgraded or changed."""
    old_parts = _version_parts(old)
    new_parts = _version_parts(new)
    for idx in range(max(len(old_parts), len(new_parts))):
        old_part = old_parts[idx] if idx < len(old_parts) else 0
        new_part = new_parts[idx] if idx < len(new_parts) else 0
        if new_part > old_part:
            return ChangeKind.UPGRADED
        if new_part < old_part:
            return ChangeKind.DOWNGRADED
    return ChangeKind.CHANGED


def is_major_bump(old: str, new: str) -> bool:
    old_parts = _version_parts(old)
    new_parts = _version_parts(new)
    if not old_parts or not new_parts:
        return False
    return new_parts[0] > old_parts[0]


def identify_dependency_risks(changes: list[DependencyChange]) -> list[DependencyRisk]:
    risks: list[DependencyRisk] = []

    for change in changes:
        if not change.is_critical:
            continue
        level = CRITICAL_PACKAGES[change.name.lower()][1]
        if change.kind is ChangeKind.ADDED:
            what = "added"
        elif change.kind is ChangeKind.REMOVED:
            what = "removed"
        else:
            what = f"updated from {change.old_version} to {change.new_version}"
        risks.append(
            DependencyRisk(
                level=level,
                title=f"Critical package changed: {change.name}",
                description=f"{change.reason} - {what}",
                affected_packages=[change.name],
                recommendation=(
                    "Requires detailed review and regression tests"
                    if level is RiskLevel.CRITICAL
                    else "Check the changelog and test dependent features"
                ),
            )
        )

    major = [
        c
        for c in changes
        if c.kind is ChangeKind.UPGRADED and is_major_bump(c.old_version, c.new_version)
    ]
    if major:
        risks.append(
            DependencyRisk(
                level=RiskLevel.HIGH,
                title="Potential breaking changes",
                description=f"{len(major)} package(s) with a major version bump",
                affected_packages=[c.name for c in major],
                recommendation="Read the changelogs for breaking changes and adapt the code",
            )
        )

    removed = [
        c for c in changes if c.kind is ChangeKind.REMOVED and c.category == "production"
    ]
    if removed:
        risks.append(
            DependencyRisk(
                level=RiskLevel.MEDIUM,
                title="Production packages removed",
                description=f"{len(removed)} production dependency(ies) removed",
                affected_packages=[c.name for c in removed],
                recommendation="Check that every reference was removed and no orphan code remains",
            )
        )

    added = [c for c in changes if c.kind is ChangeKind.ADDED]
    if len(added) > MANY_ADDED_THRESHOLD:
        risks.append(
            DependencyRisk(
                level=RiskLevel.MEDIUM,
                title="Many dependencies added",
                description=f"{len(added)} new dependencies enlarge the bundle and attack surface",
                affected_packages=[c.name for c in added],
                recommendation="Check that each one is needed; prefer lighter alternatives",
            )
        )

    downgraded = [c for c in changes if c.kind is ChangeKind.DOWNGRADED]
    if downgraded:
        risks.append(
            DependencyRisk(
                level=RiskLevel.MEDIUM,
                title="Version downgrade",
                description=f"{len(downgraded)} package(s) moved to an older version",
                affected_packages=[c.name for c in downgraded],
                recommendation="Check why; downgrades can reintroduce vulnerabilities",
            )
        )

    return risks


# ── Agent ────────────────────────────────────────────────────────


@dataclass
class DependencyAnalysisTask(TaskInput):
    """Task input for the dependency analyzer."""

    task_type: str = "analyze_dependencies"
    target: str = "dependencies"
    diff: str = ""
    changed_files: list[str] = field(default_factory=list)


class DependencyAnalyzer(BaseAgent):
    """Rates dependency changes without calling the model gateway."""

    @property
    def name(self) -> str:
        return "dependency_analyzer"

    @property
    def description(self) -> str:
        return "Assesses the risk of dependency changes in a diff"

    async def run(self, task: TaskInput) -> TaskOutput:
        if not isinstance(task, DependencyAnalysisTask):
            return TaskOutput(
                status=TaskStatus.FAILED,
                errors=["Task must be a DependencyAnalysisTask instance"],
            )
        try:
            result = analyze_dependencies(task.diff, task.changed_files or None)
        except Exception as exc:
            logger.exception("Dependency analysis failed")
            return TaskOutput(status=TaskStatus.FAILED, errors=[str(exc)])
        return TaskOutput(status=TaskStatus.COMPLETED, result={"dependencies": result})


# ── Diff parsing ─────────────────────────────────────────────────


def _version_parts(version: str) -> list[int]:
    cleaned = _VERSION_PREFIX_RE.sub("", version.split(",")[0])
    parts: list[int] = []
    for piece in cleaned.split("."):
        match = _VERSION_NUMBER_RE.match(piece)
        if match is None:
            break
        parts.append(int(match.group(0)))
    return parts


def _build_changes(
    manifest: str,
    removed: dict[str, tuple[str, str]],
    added: dict[str, tuple[str, str]],
) -> list[DependencyChange]:
    changes: list[DependencyChange] = []
    for name in sorted(set(removed) | set(added)):
        old_version, old_category = removed.get(name, ("", ""))
        new_version, new_category = added.get(name, ("", ""))
        if name in added and name in removed:
            if old_version == new_version:
                continue
            kind = compare_versions(old_version, new_version)
        elif name in added:
            kind = ChangeKind.ADDED
        else:
            kind = ChangeKind.REMOVED
        critical = CRITICAL_PACKAGES.get(name.lower())
        changes.append(
            DependencyChange(
                name=name,
                kind=kind,
                old_version=old_version,
                new_version=new_version,
                category=new_category or old_category or "production",
                manifest=manifest,
                is_critical=critical is not None,
                reason=critical[0] if critical else "",
            )
        )
    return changes


def _parse_package_json_diff(path: str, chunk: str) -> list[DependencyChange]:
    removed: dict[str, tuple[str, str]] = {}
    added: dict[str, tuple[str, str]] = {}
    section: str | None = None

    for line in chunk.splitlines():
        if line.startswith(("+++", "---", "@@")):
            continue
        body = line[1:] if line[:1] in ("+", "-", " ") else line
        header = _PACKAGE_JSON_SECTION_RE.search(body)
        if header:
            section = header.group(1)
            continue
        if body.strip().startswith("}"):
            section = None
            continue
        match = _PACKAGE_JSON_ENTRY_RE.match(line)
        if match is None or section is None:
            continue
        sign, name, version = match.groups()
        if name.startswith("@types/"):
            continue
        target = added if sign == "+" else removed
        target[name] = (version, _PACKAGE_JSON_CATEGORIES[section])

    return _build_changes(path, removed, added)


def _parse_requirements_diff(path: str, chunk: str) -> list[DependencyChange]:
    removed: dict[str, tuple[str, str]] = {}
    added: dict[str, tuple[str, str]] = {}
    category = "development" if re.search(r"dev|test", path.rsplit("/", 1)[-1]) else "production"

    for line in chunk.splitlines():
        if line.startswith(("+++", "---")):
            continue
        match = _REQUIREMENT_LINE_RE.match(line)
        if match is None:
            continue
        sign, name, spec = match.groups()
        target = added if sign == "+" else removed
        target[name.lower()] = (spec.split("#")[0].strip(), category)

    return _build_changes(path, removed, added)


def _parse_pyproject_diff(path: str, chunk: str) -> list[DependencyChange]:
    removed: dict[str, tuple[str, str]] = {}
    added: dict[str, tuple[str, str]] = {}
    category = "production"
    table = ""
    in_array = False

    for line in chunk.splitlines():
        if line.startswith(("+++", "---", "@@")):
            continue
        body = line[1:].strip() if line[:1] in ("+", "-", " ") else line.strip()
        if body.startswith("["):
            table = body
            category = "optional" if "optional-dependencies" in body else "production"
            in_array = False
            continue
        array = _PYPROJECT_ARRAY_RE.match(body)
        if array:
            in_array = array.group(1) == "dependencies" or "optional-dependencies" in table
            continue
        if body.startswith("]"):
            in_array = False
            continue
        match = _PYPROJECT_ENTRY_RE.match(line)
        if match is None or not in_array:
            continue
        sign, name, spec = match.groups()
        target = added if sign == "+" else removed
        target[name.lower()] = (spec.strip(), category)

    return _build_changes(path, removed, added)
