"""CIFixer agent — bounded, verifiable remediation of CI failures.

One fixer handles one failure and moves through these states::

    DIAGNOSING -> ATTEMPTING -> VERIFYING -> RESOLVED
                      ^              |
                      +-- still failing (attempts left)
                                     +-> EXHAUSTED (attempts spent)

Diagnosis classifies the failure (log patterns first, then the gateway) and
picks a fix action.  Each attempt produces a fix, validates it when it is a
test source, and hands it to the autonomous executor.  Whether the fix worked
is only known after CI runs again, so the attempt stays provisional until
:meth:`CIFixer.record_followup` reports the outcome.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.agents.executors.autonomous import ActionKind, EnvelopeUsage, ProposedAction
from prqa.agents.validators.test_validator import generate_fix_suggestions, validate_test
from prqa.llm.engine import GatewayError, GenerationRequest
from prqa.llm.prompts.ci_fix import CIClassificationPrompt, CIFixContext, CIFixPrompt
from prqa.models.generated_test import GeneratedTest, TestRole, infer_framework
from prqa.parsing.treesitter import detect_language
from prqa.utils.cache import content_hash
from prqa.utils.payload import as_dict, coerce_enum, str_list

if TYPE_CHECKING:
    from prqa.agents.executors.autonomous import AutonomousExecutionResult, AutonomousExecutor
    from prqa.llm.engine import LLMEngine

logger = logging.getLogger(__name__)

MAX_LOG_CHARS = 3000
DEFAULT_MAX_ATTEMPTS = 2

_ERROR_MESSAGE_RE = re.compile(r"(?:Error|FAIL|error):\s*(.+)", re.IGNORECASE)
_SPEC_PATH_RE = re.compile(r"(?:\.spec\.|\.test\.|(?:^|/)test_[^/]*\.py$|_test\.py$)")


class FailureClass(Enum):
    FLAKY_TEST = "flaky_test"
    SYNTAX_ERROR = "syntax_error"
    ASSERTION = "assertion"
    SELECTOR_OR_TIMING = "selector_or_timing"
    DEPENDENCY_MISMATCH = "dependency_mismatch"
    ENVIRONMENT = "environment"
    UNKNOWN = "unknown"


class FixAction(Enum):
    RERUN = "rerun"
    PATCH_TEST = "patch_test"
    PATCH_MANIFEST = "patch_manifest"
    NEEDS_HUMAN = "needs_human"


FIX_ACTIONS: dict[FailureClass, FixAction] = {
    FailureClass.FLAKY_TEST: FixAction.RERUN,
    FailureClass.SYNTAX_ERROR: FixAction.PATCH_TEST,
    FailureClass.ASSERTION: FixAction.PATCH_TEST,
    FailureClass.SELECTOR_OR_TIMING: FixAction.PATCH_TEST,
    FailureClass.DEPENDENCY_MISMATCH: FixAction.PATCH_MANIFEST,
    FailureClass.ENVIRONMENT: FixAction.NEEDS_HUMAN,
    FailureClass.UNKNOWN: FixAction.PATCH_TEST,
}

# Checked in order; the first match wins.
_CLASS_PATTERNS: tuple[tuple[FailureClass, re.Pattern[str]], ...] = (
    (
        FailureClass.SYNTAX_ERROR,
        re.compile(
            r"SyntaxError|Unexpected token|IndentationError|error TS1\d{3}|ParseError",
            re.IGNORECASE,
        ),
    ),
    (
        FailureClass.DEPENDENCY_MISMATCH,
        re.compile(
            r"Cannot find module|ModuleNotFoundError|ERESOLVE|peer dep|"
            r"No matching distribution|version conflict|ResolutionImpossible",
            re.IGNORECASE,
        ),
    ),
    (
        FailureClass.ENVIRONMENT,
        re.compile(
            r"ECONNREFUSED|ENOTFOUND|out of memory|No space left on device|"
            r"permission denied|503 Service Unavailable",
            re.IGNORECASE,
        ),
    ),
    (
        FailureClass.FLAKY_TEST,
        re.compile(r"\bflaky\b|passed on retry|retry #\d+|intermittent", re.IGNORECASE),
    ),
    (
        FailureClass.SELECTOR_OR_TIMING,
        re.compile(
            r"Timeout \d+ms exceeded|waiting for (?:selector|locator)|TimeoutError|"
            r"resolved to 0 elements|element is not (?:visible|attached)",
            re.IGNORECASE,
        ),
    ),
    (
        FailureClass.ASSERTION,
        re.compile(r"AssertionError|Expected:|expect\(.+\)\.\w+|assert .+==", re.IGNORECASE),
    ),
)


class FixState(Enum):
    DIAGNOSING = "diagnosing"
    ATTEMPTING = "attempting"
    VERIFYING = "verifying"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class FixVerdict(Enum):
    FIXED = "fixed"
    EXHAUSTED = "exhausted"
    NOT_APPLICABLE = "not_applicable"
    """Diagnosis or the model decided no automated fix applies."""


class CIState(Enum):
    """CI outcome observed after an attempt."""

    UNKNOWN = "unknown"
    PASSING = "passing"
    FAILING = "failing"


class FixStateError(Exception):
    """An operation is not valid in the fixer's current state."""


class ExhaustedError(FixStateError):
    """Every allowed attempt is spent; the failure needs human attention."""


# ── Data models ──────────────────────────────────────────────────


@dataclass
class CIFailureInfo:
    """A failing CI job as reported by the trigger source."""

    job: str
    """CI job or check name."""

    log: str
    """Failure log excerpt."""

    error_message: str = ""
    failed_tests: list[str] = field(default_factory=list)
    classification: FailureClass | None = None
    test_files: dict[str, str] = field(default_factory=dict)
    """Current content of the files involved, keyed by path."""


@dataclass
class FixAttempt:
    """One remediation attempt."""

    index: int
    """1-based attempt number."""

    action: FixAction
    summary: str = ""
    path: str = ""
    """File changed by the attempt, empty for reruns."""

    ci_state: CIState = CIState.UNKNOWN
    success: bool | None = None
    """``None`` while the follow-up CI run is pending."""

    error: str = ""
    execution: AutonomousExecutionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "action": self.action.value,
            "summary": self.summary,
            "path": self.path,
            "ci_state": self.ci_state.value,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class AutoFixResult:
    """Snapshot of a fixer's progress."""

    job: str
    state: FixState
    classification: FailureClass
    action: FixAction
    attempts: list[FixAttempt] = field(default_factory=list)
    verdict: FixVerdict | None = None
    """``None`` while an attempt awaits verification."""

    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "state": self.state.value,
            "verdict": self.verdict.value if self.verdict else None,
            "classification": self.classification.value,
            "action": self.action.value,
            "message": self.message,
            "attempts": [a.to_dict() for a in self.attempts],
        }


# ── Public API ───────────────────────────────────────────────────


def classify_from_log(log: str) -> FailureClass:
    """Pre-classify a failure from log patterns."""
    for failure_class, pattern in _CLASS_PATTERNS:
        if pattern.search(log):
            return failure_class
    return FailureClass.UNKNOWN


def extract_error_message(log: str) -> str:
    match = _ERROR_MESSAGE_RE.search(log)
    return match.group(1).strip() if match else ""


def truncate_log(log: str, max_chars: int = MAX_LOG_CHARS) -> str:
    return log if len(log) <= max_chars else log[:max_chars]


def format_fix_summary(result: AutoFixResult) -> str:
    """Render a short human-readable summary of *result*."""
    lines = [
        f"CI fix for {result.job}: {result.state.value}"
        + (f" ({result.verdict.value})" if result.verdict else ""),
        f"Classification: {result.classification.value} -> {result.action.value}",
    ]
    for attempt in result.attempts:
        outcome = {True: "passed", False: "failed", None: "awaiting CI"}[attempt.success]
        detail = attempt.summary or attempt.error or attempt.action.value
        target = f" [{attempt.path}]" if attempt.path else ""
        lines.append(f"  Attempt {attempt.index}{target}: {outcome} - {detail}")
    if result.message:
        lines.append(result.message)
    return "\n".join(lines)


# ── Agent ────────────────────────────────────────────────────────


@dataclass
class CIFixTask(TaskInput):
    """Task input for starting remediation of one CI failure."""

    task_type: str = "fix_ci_failure"
    target: str = ""
    failure: CIFailureInfo | None = None

    def __post_init__(self) -> None:
        if not self.target and self.failure is not None:
            self.target = self.failure.job


class CIFixer(BaseAgent):
    """State machine driving bounded fix attempts for one CI failure."""

    def __init__(
        self,
        llm_engine: LLMEngine,
        executor: AutonomousExecutor,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_tokens: int = 8000,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._llm = llm_engine
        self._executor = executor
        self._max_attempts = max_attempts
        self._max_tokens = max_tokens
        self._classify_prompt = CIClassificationPrompt()
        self._fix_prompt = CIFixPrompt()

        self._state = FixState.DIAGNOSING
        self._failure: CIFailureInfo | None = None
        self._classification = FailureClass.UNKNOWN
        self._action = FixAction.NEEDS_HUMAN
        self._attempts: list[FixAttempt] = []
        self._usage = EnvelopeUsage()
        self._verdict: FixVerdict | None = None
        self._message = ""

    @property
    def name(self) -> str:
        return "ci_fixer"

    @property
    def description(self) -> str:
        return "Classifies CI failures and applies bounded fix attempts"

    @property
    def state(self) -> FixState:
        return self._state

    @property
    def attempts(self) -> list[FixAttempt]:
        return list(self._attempts)

    async def run(self, task: TaskInput) -> TaskOutput:
        if not isinstance(task, CIFixTask) or task.failure is None:
            return TaskOutput(
                status=TaskStatus.FAILED,
                errors=["Task must be a CIFixTask with a failure"],
            )
        try:
            result = await self.start(task.failure)
        except GatewayError as exc:
            logger.error("CI failure diagnosis failed: %s", exc)
            return TaskOutput.failed(exc)
        return TaskOutput(status=TaskStatus.COMPLETED, result={"fix": result})

    async def start(self, failure: CIFailureInfo) -> AutoFixResult:
        """Diagnose *failure* and make the first attempt.

        Raises:
            FixStateError: If this fixer already handled a failure.
            GatewayError: If classification fails.
        """
        if self._failure is not None:
            raise FixStateError("This fixer already handles a failure")

        log = truncate_log(failure.log)
        failure = replace(
            failure,
            log=log,
            error_message=failure.error_message or extract_error_message(log),
            failed_tests=list(failure.failed_tests),
            test_files=dict(failure.test_files),
        )
        self._failure = failure

        self._classification = await self._diagnose(failure)
        self._action = FIX_ACTIONS[self._classification]
        logger.info(
            "CI failure in %s classified as %s -> %s",
            failure.job,
            self._classification.value,
            self._action.value,
        )

        if self._action is FixAction.NEEDS_HUMAN:
            self._finish(
                FixState.EXHAUSTED,
                FixVerdict.NOT_APPLICABLE,
                f"{self._classification.value} failures need human attention",
            )
            return self.result()

        await self._advance(failure)
        return self.result()

    async def record_followup(self, *, passed: bool) -> AutoFixResult:
        """Finalize the pending attempt with the outcome of the next CI run.

        A failing follow-up triggers the next attempt while attempts remain.

        Raises:
            ExhaustedError: If every attempt was already spent.
            FixStateError: If no attempt is awaiting verification.
        """
        if self._state is FixState.EXHAUSTED:
            raise ExhaustedError(
                f"No attempts left for {self._job} after {len(self._attempts)} attempt(s)"
            )
        if self._failure is None or self._state is not FixState.VERIFYING:
            raise FixStateError(f"No attempt awaiting verification (state: {self._state.value})")

        attempt = self._attempts[-1]
        attempt.success = passed
        attempt.ci_state = CIState.PASSING if passed else CIState.FAILING
        logger.info(
            "CI follow-up for %s attempt %d: %s",
            self._job,
            attempt.index,
            "passing" if passed else "still failing",
        )

        if passed:
            self._finish(
                FixState.RESOLVED, FixVerdict.FIXED, f"Fixed on attempt {attempt.index}"
            )
            return self.result()

        await self._advance(self._failure)
        return self.result()

    def result(self) -> AutoFixResult:
        return AutoFixResult(
            job=self._job,
            state=self._state,
            classification=self._classification,
            action=self._action,
            attempts=list(self._attempts),
            verdict=self._verdict,
            message=self._message,
        )

    # ── Internal helpers ──────────────────────────────────────────

    @property
    def _job(self) -> str:
        return self._failure.job if self._failure else ""

    def _finish(self, state: FixState, verdict: FixVerdict, message: str) -> None:
        self._state = state
        self._verdict = verdict
        self._message = message
        logger.info("CI fix for %s: %s (%s)", self._job, state.value, verdict.value)

    async def _advance(self, failure: CIFailureInfo) -> None:
        """Make attempts until one awaits verification or none are left."""
        while len(self._attempts) < self._max_attempts:
            self._state = FixState.ATTEMPTING
            attempt = await self._attempt(failure, len(self._attempts) + 1)
            self._attempts.append(attempt)
            if attempt.success is None:
                self._state = FixState.VERIFYING
                return
            if self._verdict is not None:
                return

        self._finish(
            FixState.EXHAUSTED,
            FixVerdict.EXHAUSTED,
            f"Auto-fix failed after {len(self._attempts)} attempt(s). Human intervention required.",
        )

    async def _diagnose(self, failure: CIFailureInfo) -> FailureClass:
        if failure.classification is not None:
            return failure.classification

        pre = classify_from_log(failure.log)
        rendered = self._classify_prompt.render(self._context(failure, pre))
        payload, _ = await self._llm.generate_json(
            GenerationRequest(
                messages=rendered.messages,
                max_tokens=512,
                cache_key=f"{self._classify_prompt.name}:{content_hash(rendered.user_message)}",
                metadata={"prompt": self._classify_prompt.name},
            ),
            required=("classification",),
        )
        return coerce_enum(FailureClass, payload.get("classification"), pre)

    async def _attempt(self, failure: CIFailureInfo, index: int) -> FixAttempt:
        if self._action is FixAction.RERUN:
            logger.info("Attempt %d for %s: requesting a re-run", index, self._job)
            return FixAttempt(index=index, action=FixAction.RERUN, summary="Re-run the job")

        try:
            fix = await self._generate_fix(failure)
        except GatewayError as exc:
            logger.warning("Attempt %d for %s: fix generation failed: %s", index, self._job, exc)
            return FixAttempt(
                index=index,
                action=self._action,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
            )

        if not fix.get("can_fix"):
            analysis = str(fix.get("analysis") or "The model found no automated fix")
            self._finish(FixState.EXHAUSTED, FixVerdict.NOT_APPLICABLE, analysis)
            return FixAttempt(index=index, action=self._action, success=False, error=analysis)

        fixed = as_dict(fix.get("fixed_file"))
        path = str(fixed.get("path") or "")
        content = fixed.get("content")
        summary = "; ".join(str_list(fixed.get("changes"))) or str(fix.get("analysis") or "")
        if not path or not isinstance(content, str):
            return FixAttempt(
                index=index,
                action=self._action,
                success=False,
                error="Fix response has no file path or content",
            )

        problems = self._validate_fix(path, content)
        if problems:
            return FixAttempt(
                index=index,
                action=self._action,
                path=path,
                summary=summary,
                success=False,
                error="Fix failed validation: " + "; ".join(problems),
            )

        original = failure.test_files.get(path)
        action = ProposedAction(
            kind=ActionKind.APPLY_PATCH if original is not None else ActionKind.WRITE_FILE,
            path=path,
            content=content,
            expected_original=original,
            stage="ci_fix",
            subject=f"{self._job}#{index}",
        )
        execution = await self._executor.execute([action], usage=self._usage)
        if not execution.all_succeeded:
            errors = "; ".join(r.error for r in execution.failed)
            return FixAttempt(
                index=index,
                action=self._action,
                path=path,
                summary=summary,
                success=False,
                error=f"Fix was not applied: {errors}",
                execution=execution,
            )

        # Later attempts see the patched content as the current file.
        failure.test_files[path] = content
        logger.info("Attempt %d for %s applied to %s; awaiting CI", index, self._job, path)
        return FixAttempt(
            index=index, action=self._action, path=path, summary=summary, execution=execution
        )

    async def _generate_fix(self, failure: CIFailureInfo) -> dict[str, Any]:
        rendered = self._fix_prompt.render(self._context(failure, self._classification))
        payload, _ = await self._llm.generate_json(
            GenerationRequest(
                messages=rendered.messages,
                max_tokens=self._max_tokens,
                cache_key=f"{self._fix_prompt.name}:{content_hash(rendered.user_message)}",
                metadata={"prompt": self._fix_prompt.name, "round": len(self._attempts) + 1},
            ),
            required=("can_fix",),
        )
        return payload

    def _context(self, failure: CIFailureInfo, classification: FailureClass) -> CIFixContext:
        return CIFixContext(
            job=failure.job,
            log_excerpt=failure.log,
            error_message=failure.error_message,
            failed_tests=list(failure.failed_tests),
            classification=classification.value,
            test_files=dict(failure.test_files),
            previous_attempts=[
                f"Attempt {a.index}: {a.summary or a.error or a.action.value}"
                for a in self._attempts
            ],
        )

    def _validate_fix(self, path: str, content: str) -> list[str]:
        """Validate test sources; manifests and other files pass through."""
        if detect_language(path) is None:
            return []
        role = TestRole.SPEC if _SPEC_PATH_RE.search(path) else TestRole.PAGE_OBJECT
        result = validate_test(
            GeneratedTest(
                candidate_id="fix",
                path=path,
                source=content,
                role=role,
                framework=infer_framework(path),
            )
        )
        if result.passed:
            return []
        logger.warning("Proposed fix for %s failed validation: %s", path, result.error_messages())
        return generate_fix_suggestions(result) or result.error_messages()
