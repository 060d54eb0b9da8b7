"""Trigger variants accepted by the orchestrator and the stage plans they map to."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from prqa.agents.analyzers.requirements import RequirementsDocument
    from prqa.agents.debuggers.ci_fixer import CIFailureInfo
    from prqa.models.pull_request import PullRequestInfo

logger = logging.getLogger(__name__)

SELF_TITLE_TAG = "[prqa]"
SELF_BRANCH_PREFIX = "prqa/"

# Stage names used in plans and run reports.
FEEDBACK = "feedback"
ANALYSIS = "analysis"
DEPENDENCIES = "dependencies"
REQUIREMENTS = "requirements"
COVERAGE = "coverage"
TESTS = "tests"
EXECUTION = "execution"
CI_FIX = "ci_fix"

HELP_TEXT = """Available commands:
  /qa analyze          Analyze the pull request
  /qa generate tests   Generate, validate and write end-to-end tests
  /qa coverage         Rank under-tested areas of the changed files
  /qa help             Show this message"""


class CommandKind(Enum):
    ANALYZE = "analyze"
    GENERATE_TESTS = "generate_tests"
    COVERAGE = "coverage"
    HELP = "help"


_COMMAND_PATTERNS: tuple[tuple[CommandKind, re.Pattern[str]], ...] = (
    (CommandKind.ANALYZE, re.compile(r"^(?:analyze|analysis)\b")),
    (
        CommandKind.GENERATE_TESTS,
        re.compile(r"^(?:generate[\s-]+tests?|gen[\s-]+tests?|tests?)\b"),
    ),
    (CommandKind.COVERAGE, re.compile(r"^coverage\b")),
    (CommandKind.HELP, re.compile(r"^(?:help\b|$)")),
)


@dataclass(frozen=True)
class ParsedCommand:
    """A comment addressed to the bot."""

    text: str
    """The words after the prefix, lowercased."""

    kind: CommandKind | None = None
    """``None`` when the words name no known command."""

    @property
    def recognized(self) -> bool:
        return self.kind is not None


def parse_command(comment: str, prefix: str = "/qa") -> ParsedCommand | None:
    """Parse the first line of *comment*.

    Returns ``None`` when the comment is not addressed to the bot at all.
    """
    first_line = comment.strip().splitlines()[0] if comment.strip() else ""
    match = re.match(rf"^{re.escape(prefix)}(?:\s+(.*)|$)", first_line, re.IGNORECASE)
    if match is None:
        return None
    words = " ".join((match.group(1) or "").lower().split())
    for kind, pattern in _COMMAND_PATTERNS:
        if pattern.match(words):
            return ParsedCommand(text=words, kind=kind)
    return ParsedCommand(text=words)


# ── Trigger variants ─────────────────────────────────────────────


@dataclass(frozen=True)
class PullRequestEvent:
    """A pull request was opened or updated."""

    kind: ClassVar[str] = "pull_request"

    pull_request: PullRequestInfo
    silent: bool = False
    """Run the analysis only and suppress notification."""

    requirements_text: str = ""
    document: RequirementsDocument | None = None
    coverage_artifact: bytes | str | None = None


@dataclass(frozen=True)
class CommentCommand:
    """A ``/qa`` comment on a pull request."""

    kind: ClassVar[str] = "comment_command"

    pull_request: PullRequestInfo
    text: str
    requirements_text: str = ""
    document: RequirementsDocument | None = None
    coverage_artifact: bytes | str | None = None


@dataclass(frozen=True)
class CIFailureEvent:
    """A CI job failed on a pull request branch."""

    kind: ClassVar[str] = "ci_failure"

    failure: CIFailureInfo
    pull_request: PullRequestInfo | None = None


Trigger = PullRequestEvent | CommentCommand | CIFailureEvent


# ── Stage plans ──────────────────────────────────────────────────


@dataclass(frozen=True)
class StagePlan:
    """Ordered stages for one trigger; a required stage failing errors the run."""

    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()

    @property
    def stages(self) -> tuple[str, ...]:
        return self.required + self.optional

    def includes(self, stage: str) -> bool:
        return stage in self.required or stage in self.optional

    def is_required(self, stage: str) -> bool:
        return stage in self.required

    def without(self, stage: str) -> StagePlan:
        return StagePlan(
            required=tuple(s for s in self.required if s != stage),
            optional=tuple(s for s in self.optional if s != stage),
        )


FULL_PLAN = StagePlan(
    required=(ANALYSIS,),
    optional=(FEEDBACK, DEPENDENCIES, REQUIREMENTS, COVERAGE, TESTS, EXECUTION),
)
SILENT_PLAN = StagePlan(required=(ANALYSIS,))
CI_FAILURE_PLAN = StagePlan(required=(CI_FIX,))

COMMAND_PLANS: dict[CommandKind, StagePlan] = {
    CommandKind.ANALYZE: StagePlan(required=(ANALYSIS,), optional=(FEEDBACK, DEPENDENCIES)),
    CommandKind.GENERATE_TESTS: StagePlan(
        required=(ANALYSIS, TESTS), optional=(FEEDBACK, EXECUTION)
    ),
    CommandKind.COVERAGE: StagePlan(required=(COVERAGE,)),
    CommandKind.HELP: StagePlan(),
}


def plan_for(trigger: Trigger, command: ParsedCommand | None = None) -> StagePlan | None:
    """Return the stage plan for *trigger*.

    Returns ``None`` for a comment whose command is not recognized.
    The requirements stage only runs when the event carries requirements.
    """
    match trigger:
        case PullRequestEvent(silent=True):
            return SILENT_PLAN
        case PullRequestEvent():
            plan = FULL_PLAN
            if not (trigger.requirements_text.strip() or trigger.document is not None):
                plan = plan.without(REQUIREMENTS)
            return plan
        case CommentCommand():
            if command is None or command.kind is None:
                return None
            return COMMAND_PLANS[command.kind]
        case CIFailureEvent():
            return CI_FAILURE_PLAN
    raise TypeError(f"Unsupported trigger: {type(trigger).__name__}")


# ── Event routing ────────────────────────────────────────────────


def is_self_authored(pull_request: PullRequestInfo) -> bool:
    """True for pull requests this tool opened itself."""
    return (
        SELF_TITLE_TAG in pull_request.title.lower()
        or pull_request.head_ref.startswith(SELF_BRANCH_PREFIX)
    )


def pull_request_trigger(
    pull_request: PullRequestInfo,
    trigger_mode: str = "hybrid",
    *,
    requirements_text: str = "",
    coverage_artifact: bytes | str | None = None,
) -> PullRequestEvent | None:
    """Decide how a pull request event is processed under *trigger_mode*.

    ``hybrid`` runs it silently, ``auto`` runs it fully with notification and
    ``command`` ignores it.  Self-authored pull requests are always ignored.
    """
    if is_self_authored(pull_request):
        logger.info("Ignoring self-authored pull request %s", pull_request.number)
        return None
    if trigger_mode == "command":
        logger.info("Trigger mode 'command': waiting for a /qa comment")
        return None
    return PullRequestEvent(
        pull_request=pull_request,
        silent=trigger_mode != "auto",
        requirements_text=requirements_text,
        coverage_artifact=coverage_artifact,
    )
