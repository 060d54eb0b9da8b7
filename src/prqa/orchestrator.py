"""Run orchestrator: sequences pipeline stages for one trigger.

A run moves through ``RECEIVED -> ANALYZING -> GENERATING -> VALIDATING ->
EXECUTING -> REPORTING -> DONE``; ``ERRORED`` is reachable from any state and
absorbing.  The trigger selects a :class:`~prqa.triggers.StagePlan`.  Every
stage is dispatched through one uniform wrapper that turns exceptions into a
failed :class:`~prqa.agents.base.TaskOutput`, so a failing optional stage only
degrades the report while a failing required stage errors the run.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from prqa.agents.analyzers.coverage import CoverageAnalyzer
from prqa.agents.analyzers.dependencies import DependencyAnalysisTask, DependencyAnalyzer
from prqa.agents.analyzers.pull_request import PRAnalysisTask, PullRequestAnalyzer
from prqa.agents.analyzers.requirements import (
    RequirementsAnalysisTask,
    RequirementsAnalyzer,
    RequirementsInput,
)
from prqa.agents.base import BaseAgent, TaskInput, TaskOutput, TaskStatus
from prqa.agents.builders.test_generator import TestGenerator
from prqa.agents.debuggers.ci_fixer import CIFixer, FixState, FixVerdict
from prqa.agents.executors.autonomous import (
    ActionKind,
    ActionStatus,
    AutonomousExecutor,
    FileSystemWorkspace,
    ProposedAction,
    SafetyEnvelope,
)
from prqa.agents.pipelines.self_correction import SelfCorrectionLoop
from prqa.agents.validators.test_validator import TestValidator
from prqa.config import ProjectConfig, QAConfig
from prqa.llm.engine import GatewayError
from prqa.llm.factory import create_engine
from prqa.llm.usage import UsageLedger, call_scope
from prqa.memory.feedback import (
    FeedbackCollector,
    FeedbackStore,
    SuggestionCategory,
    Verdict,
    latest_by_subject,
)
from prqa.memory.learning import LearningEngine
from prqa.models.pull_request import AnalysisRequest
from prqa.models.report import RunEvent, RunReport, RunState, StageReport, StageStatus
from prqa.telemetry import record_metric_count, record_metric_distribution, set_run_tags, start_span
from prqa.triggers import (
    ANALYSIS,
    CI_FIX,
    COVERAGE,
    DEPENDENCIES,
    EXECUTION,
    FEEDBACK,
    HELP_TEXT,
    REQUIREMENTS,
    TESTS,
    CIFailureEvent,
    CommandKind,
    CommentCommand,
    ParsedCommand,
    PullRequestEvent,
    StagePlan,
    Trigger,
    parse_command,
    plan_for,
)
from prqa.utils.cancellation import CancellationToken, RunCancelled

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from prqa.agents.debuggers.ci_fixer import AutoFixResult
    from prqa.agents.pipelines.self_correction import SelfCorrectionResult
    from prqa.llm.engine import LLMEngine
    from prqa.models.analysis import AnalysisResult
    from prqa.models.pull_request import PullRequestInfo

logger = logging.getLogger(__name__)

_PARALLEL_STAGES = (ANALYSIS, DEPENDENCIES, REQUIREMENTS, COVERAGE)
_STAGE_AGENTS = {
    ANALYSIS: "pull_request_analyzer",
    DEPENDENCIES: "dependency_analyzer",
    REQUIREMENTS: "requirements_analyzer",
    COVERAGE: "coverage_analyzer",
}


class StageRequiredFailed(Exception):
    """A stage the active plan marks as required did not succeed."""

    def __init__(self, stage: str, errors: list[str]) -> None:
        self.stage = stage
        self.errors = errors
        detail = "; ".join(errors) or "no detail"
        super().__init__(f"required stage '{stage}' failed: {detail}")


class Orchestrator:
    """Runs stage plans for pull request, comment and CI failure triggers."""

    def __init__(
        self,
        llm_engine: LLMEngine,
        *,
        executor: AutonomousExecutor | None = None,
        feedback_store: FeedbackStore | None = None,
        config: QAConfig | None = None,
        ledger: UsageLedger | None = None,
    ) -> None:
        self._config = config or QAConfig(project=ProjectConfig(root="."))
        pipeline = self._config.pipeline
        self._llm = llm_engine
        self._executor = executor
        self._ledger = ledger
        self._collector: FeedbackCollector | None = None
        self._learning: LearningEngine | None = None
        if feedback_store is not None:
            self._collector = FeedbackCollector(feedback_store)
            self._learning = LearningEngine(feedback_store, self._config.feedback)
        self._generator = TestGenerator(
            llm_engine,
            output_dir=self._config.executor.output_dir,
            max_scenarios=pipeline.max_scenarios,
        )
        self._validator = TestValidator()
        self._fixers: dict[str, CIFixer] = {}

        self._agents: dict[str, BaseAgent] = {}
        self.register_agent(
            PullRequestAnalyzer(llm_engine, max_diff_chars=pipeline.max_diff_chars)
        )
        self.register_agent(DependencyAnalyzer())
        self.register_agent(RequirementsAnalyzer(llm_engine))
        self.register_agent(CoverageAnalyzer(self._config.coverage))

    @classmethod
    def from_config(
        cls,
        config: QAConfig,
        *,
        dry_run: bool | None = None,
        ledger: UsageLedger | None = None,
    ) -> Orchestrator:
        """Wire the gateway, executor and feedback store described by *config*."""
        ledger = ledger or UsageLedger()
        engine = create_engine(config.llm, ledger=ledger)
        executor = None
        if config.executor.enabled:
            executor = AutonomousExecutor(
                FileSystemWorkspace(config.root_path),
                SafetyEnvelope.from_config(config.executor, dry_run=dry_run),
            )
        store = FeedbackStore.for_project(config.root_path, config.feedback.store_path)
        return cls(engine, executor=executor, feedback_store=store, config=config, ledger=ledger)

    # ── Agent registry ────────────────────────────────────────────

    def register_agent(self, agent: BaseAgent) -> None:
        """Register (or replace) the agent dispatched for its name."""
        self._agents[agent.name] = agent
        logger.debug("Registered agent: %s", agent.name)

    def get_agent(self, name: str) -> BaseAgent | None:
        return self._agents.get(name)

    # ── Public API ────────────────────────────────────────────────

    async def run(
        self,
        trigger: Trigger,
        *,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RunReport:
        """Process *trigger* and return the run report.

        The report is returned for every outcome; required-stage failures,
        unrecognized commands and cancellation end in ``ERRORED``.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        report = RunReport(run_id=run_id, trigger=trigger.kind)
        self._transition(report, RunState.RECEIVED)
        set_run_tags(run_id, trigger.kind)

        command: ParsedCommand | None = None
        if isinstance(trigger, CommentCommand):
            command = parse_command(trigger.text, self._config.pipeline.command_prefix)
        plan = plan_for(trigger, command)
        if plan is None:
            text = trigger.text if isinstance(trigger, CommentCommand) else trigger.kind
            self._error(report, f"unrecognized command: {text.strip()!r}")
            return self._finish(report)
        report.notify = not (isinstance(trigger, PullRequestEvent) and trigger.silent)
        logger.info(
            "Run %s (%s): required=%s optional=%s",
            run_id,
            trigger.kind,
            ",".join(plan.required) or "-",
            ",".join(plan.optional) or "-",
        )

        try:
            if cancel is not None:
                cancel.raise_if_cancelled()
            with call_scope(run_id=run_id, stage="", round=0):
                await self._until_cancelled(
                    self._execute(trigger, plan, command, report, cancel), cancel
                )
        except StageRequiredFailed as exc:
            self._error(report, str(exc))
        except RunCancelled as exc:
            self._error(report, f"cancelled: {exc}")

        self._mark_skipped(report, plan)
        if report.state is not RunState.ERRORED:
            self._transition(report, RunState.REPORTING)
            self._record_pending_feedback(report, trigger)
            self._transition(report, RunState.DONE)
        return self._finish(report)

    async def record_ci_followup(self, run_id: str, *, passed: bool) -> AutoFixResult:
        """Report the CI outcome after the fix applied by run *run_id*.

        Raises:
            KeyError: If no fix from that run is awaiting verification.
            ExhaustedError: If the fixer has no attempts left.
        """
        fixer = self._fixers[run_id]
        with call_scope(run_id=run_id, stage=CI_FIX):
            result = await fixer.record_followup(passed=passed)
        if result.state is not FixState.VERIFYING:
            del self._fixers[run_id]
        record_metric_count("prqa.ci_fix.followup", passed=str(passed), state=result.state.value)
        return result

    # ── Plan execution ────────────────────────────────────────────

    async def _execute(
        self,
        trigger: Trigger,
        plan: StagePlan,
        command: ParsedCommand | None,
        report: RunReport,
        cancel: CancellationToken | None,
    ) -> None:
        if isinstance(trigger, CIFailureEvent):
            self._transition(report, RunState.EXECUTING)
            await self._run_stage(report, plan, CI_FIX, lambda: self._ci_fix(trigger, report))
            self._raise_required(report, plan, (CI_FIX,))
            return

        if command is not None and command.kind is CommandKind.HELP:
            report.stages["help"] = StageReport(
                name="help", status=StageStatus.SUCCEEDED, payload=HELP_TEXT
            )
            return

        request = self._request(report.run_id, trigger, plan, report.notify)
        pull_request = request.pull_request
        guidance: list[str] = []
        if plan.includes(FEEDBACK):
            output = await self._run_stage(report, plan, FEEDBACK, self._read_feedback)
            if output.ok:
                guidance = list(output.result[FEEDBACK]["guidance"])

        self._transition(report, RunState.ANALYZING)
        parallel = [name for name in _PARALLEL_STAGES if plan.includes(name)]
        await asyncio.gather(
            *(
                self._run_stage(
                    report, plan, name, self._agent_work(name, trigger, request, guidance)
                )
                for name in parallel
            )
        )
        self._raise_required(report, plan, parallel)

        if not plan.includes(TESTS):
            return
        analysis = report.payload_of(ANALYSIS)
        output = await self._run_stage(
            report,
            plan,
            TESTS,
            lambda: self._generate_tests(report, pull_request, analysis, guidance, cancel),
        )
        self._raise_required(report, plan, (TESTS,))

        if plan.includes(EXECUTION) and output.ok:
            correction: SelfCorrectionResult = output.result[TESTS]
            if cancel is not None:
                cancel.raise_if_cancelled()
            await self._run_stage(
                report,
                plan,
                EXECUTION,
                lambda: self._materialize(report, pull_request, correction, cancel),
            )

    async def _run_stage(
        self,
        report: RunReport,
        plan: StagePlan,
        name: str,
        work: Callable[[], Awaitable[TaskOutput]],
    ) -> TaskOutput:
        """Run one stage and record its :class:`StageReport`."""
        required = plan.is_required(name)
        started = time.monotonic()
        with call_scope(stage=name), start_span("prqa.stage", name) as span:
            try:
                output = await work()
            except RunCancelled:
                raise
            except Exception as exc:
                logger.exception("Stage %s raised", name)
                output = TaskOutput.failed(exc)
            span.set_data("status", output.status.value)

        if output.ok:
            status = StageStatus.DEGRADED if output.partial else StageStatus.SUCCEEDED
        else:
            status = StageStatus.FAILED if required else StageStatus.DEGRADED
        duration_ms = int((time.monotonic() - started) * 1000)
        report.stages[name] = StageReport(
            name=name,
            status=status,
            required=required,
            payload=output.result.get(name),
            errors=list(output.errors),
            duration_ms=duration_ms,
        )
        self._event(report, "stage", name, status.value)
        log = logger.info if status is StageStatus.SUCCEEDED else logger.warning
        log("Stage %s %s in %dms%s", name, status.value, duration_ms, _error_suffix(output.errors))
        record_metric_count("prqa.stage", stage=name, status=status.value)
        record_metric_distribution("prqa.stage.duration", duration_ms, "millisecond", stage=name)
        return output

    def _agent_work(
        self,
        name: str,
        trigger: PullRequestEvent | CommentCommand,
        request: AnalysisRequest,
        guidance: list[str],
    ) -> Callable[[], Awaitable[TaskOutput]]:
        agent = self._agents[_STAGE_AGENTS[name]]
        task = self._task_for(name, trigger, request, guidance)
        return lambda: agent.run(task)

    @staticmethod
    def _task_for(
        name: str,
        trigger: PullRequestEvent | CommentCommand,
        request: AnalysisRequest,
        guidance: list[str],
    ) -> TaskInput:
        pull_request = request.pull_request
        if name == ANALYSIS:
            return PRAnalysisTask(pull_request=pull_request, guidance=guidance)
        if name == DEPENDENCIES:
            return DependencyAnalysisTask(
                diff=pull_request.diff, changed_files=pull_request.changed_files
            )
        if name == REQUIREMENTS:
            return RequirementsAnalysisTask(
                source=RequirementsInput(
                    requirements=request.requirements_text,
                    document=trigger.document,
                    diff=pull_request.diff,
                    pr_description=pull_request.body,
                    metadata={"project": pull_request.full_name},
                )
            )
        return TaskInput(
            task_type="analyze_coverage",
            target=pull_request.full_name,
            context={
                "artifact": request.coverage_artifact,
                "changed_files": pull_request.changed_files,
                "diff": pull_request.diff,
            },
        )

    # ── Stage bodies ──────────────────────────────────────────────

    async def _read_feedback(self) -> TaskOutput:
        if self._learning is None:
            return TaskOutput(
                status=TaskStatus.COMPLETED,
                result={FEEDBACK: {"guidance": [], "stats": None}},
            )
        stats = await asyncio.to_thread(self._learning.stats)
        guidance = await asyncio.to_thread(self._learning.prompt_enhancements)
        return TaskOutput(
            status=TaskStatus.COMPLETED,
            result={FEEDBACK: {"guidance": guidance, "stats": stats.to_dict()}},
        )

    async def _generate_tests(
        self,
        report: RunReport,
        pull_request: PullRequestInfo,
        analysis: AnalysisResult | None,
        guidance: list[str],
        cancel: CancellationToken | None,
    ) -> TaskOutput:
        if analysis is None:
            return TaskOutput(status=TaskStatus.FAILED, errors=["No analysis to generate from"])

        self._transition(report, RunState.GENERATING)
        loop = SelfCorrectionLoop(
            self._generator,
            self._validator,
            max_rounds=self._config.pipeline.max_correction_rounds,
        )
        try:
            with call_scope(round=1):
                generation = await self._generator.generate(
                    pull_request, analysis, guidance=guidance
                )
            self._transition(report, RunState.VALIDATING)
            correction = await loop.run(generation.candidates, guidance=guidance, cancel=cancel)
        except GatewayError as exc:
            logger.error("Test generation failed, nothing will be written: %s", exc)
            return TaskOutput.failed(exc)

        for candidate in correction.accepted:
            self._event(report, "validated", candidate.candidate_id, candidate.path)
        errors = [
            f"Dropped {c.path}: "
            + "; ".join(correction.validations[c.candidate_id].error_messages())
            for c in correction.dropped
        ]
        return TaskOutput(
            status=TaskStatus.COMPLETED,
            result={TESTS: correction},
            partial=not correction.complete,
            errors=errors,
        )

    async def _materialize(
        self,
        report: RunReport,
        pull_request: PullRequestInfo,
        correction: SelfCorrectionResult,
        cancel: CancellationToken | None,
    ) -> TaskOutput:
        if self._executor is None:
            return TaskOutput(status=TaskStatus.FAILED, errors=["Executor is disabled"])

        self._transition(report, RunState.EXECUTING)
        actions = [
            ProposedAction(
                kind=ActionKind.WRITE_FILE,
                path=candidate.path,
                content=candidate.source,
                stage=TESTS,
                subject=candidate.candidate_id,
            )
            for candidate in correction.accepted
            if correction.validations[candidate.candidate_id].passed
        ]
        if actions and ActionKind.COMMIT in self._executor.envelope.allowed_actions:
            actions.append(
                ProposedAction(
                    kind=ActionKind.COMMIT,
                    message=f"test: add generated e2e tests for #{pull_request.number} [prqa]",
                    stage=EXECUTION,
                )
            )

        result = await self._executor.execute(actions, cancel=cancel)
        for action_result in result.results:
            if action_result.status is ActionStatus.APPLIED and action_result.action.path:
                self._event(
                    report, "materialized", action_result.action.subject, action_result.action.path
                )
        return TaskOutput(
            status=TaskStatus.COMPLETED,
            result={EXECUTION: result},
            partial=not result.all_succeeded,
            errors=[
                f"{r.action.kind.value} {r.action.path}: {r.error}".strip() for r in result.failed
            ],
        )

    async def _ci_fix(self, trigger: CIFailureEvent, report: RunReport) -> TaskOutput:
        if self._executor is None:
            return TaskOutput(status=TaskStatus.FAILED, errors=["Executor is disabled"])

        fixer = CIFixer(
            self._llm, self._executor, max_attempts=self._config.pipeline.max_fix_attempts
        )
        try:
            result = await fixer.start(trigger.failure)
        except GatewayError as exc:
            logger.error("CI failure diagnosis failed: %s", exc)
            return TaskOutput.failed(exc)

        if result.state is FixState.VERIFYING:
            self._fixers[report.run_id] = fixer
        for attempt in result.attempts:
            if attempt.execution is not None and attempt.path in attempt.execution.applied_paths:
                self._event(report, "materialized", f"{result.job}#{attempt.index}", attempt.path)
        return TaskOutput(
            status=TaskStatus.COMPLETED,
            result={CI_FIX: result},
            partial=result.verdict in (FixVerdict.EXHAUSTED, FixVerdict.NOT_APPLICABLE),
            errors=[a.error for a in result.attempts if a.error],
        )

    # ── Reporting ─────────────────────────────────────────────────

    def _record_pending_feedback(self, report: RunReport, trigger: Trigger) -> None:
        """Log the run's new suggestions as awaiting a human verdict.

        Subjects already in the log keep their entry, so a re-run on the same
        pull request never buries a reviewer's verdict under a fresh pending one.
        """
        if self._collector is None or not report.notify:
            return
        pull_request = getattr(trigger, "pull_request", None)
        repo = pull_request.full_name if pull_request else ""
        number = pull_request.number if pull_request else 0
        prefix = f"{repo}#{number}" if pull_request else report.run_id

        subjects: list[tuple[str, SuggestionCategory]] = []
        analysis = report.payload_of(ANALYSIS)
        if analysis is not None:
            subjects += [
                (f"{prefix}/risk/{index}", SuggestionCategory.RISK)
                for index, _ in enumerate(analysis.risks, start=1)
            ]
            subjects += [
                (f"{prefix}/{scenario.id}", SuggestionCategory.SCENARIO)
                for scenario in analysis.scenarios
            ]
        correction = report.payload_of(TESTS)
        if correction is not None:
            subjects += [
                (f"{prefix}/{candidate.path}", SuggestionCategory.GENERATED_TEST)
                for candidate in correction.accepted
            ]
        fix = report.payload_of(CI_FIX)
        if fix is not None and fix.attempts:
            subjects.append((f"{prefix}/ci/{fix.job}", SuggestionCategory.CI_FIX))

        try:
            known = latest_by_subject(self._collector.history())
            for subject, category in subjects:
                if subject in known:
                    logger.debug(
                        "Feedback for %s already logged as %s",
                        subject,
                        known[subject].verdict.value,
                    )
                    continue
                self._collector.record(
                    subject,
                    category,
                    Verdict.PENDING,
                    repo=repo,
                    pr_number=number,
                    run_id=report.run_id,
                )
        except OSError as exc:
            logger.warning("Could not record pending feedback: %s", exc)

    def _finish(self, report: RunReport) -> RunReport:
        report.finished_at = datetime.now(UTC).isoformat()
        if self._ledger is not None:
            report.usage = self._ledger.summarize(report.run_id).to_dict()
        logger.info(
            "Run %s finished %s (succeeded=%d degraded=%d failed=%d)",
            report.run_id,
            report.state.value,
            len(report.succeeded),
            len(report.degraded),
            len(report.failed),
        )
        record_metric_count("prqa.run", trigger=report.trigger, state=report.state.value)
        return report

    # ── Internal helpers ──────────────────────────────────────────

    @staticmethod
    def _request(
        run_id: str, trigger: PullRequestEvent | CommentCommand, plan: StagePlan, notify: bool
    ) -> AnalysisRequest:
        return AnalysisRequest(
            run_id=run_id,
            pull_request=trigger.pull_request,
            trigger_kind="silent" if not notify else trigger.kind,
            required_stages=plan.required,
            optional_stages=plan.optional,
            notify=notify,
            requirements_text=trigger.requirements_text,
            coverage_artifact=trigger.coverage_artifact,
        )

    @staticmethod
    async def _until_cancelled(work: Awaitable[None], cancel: CancellationToken | None) -> None:
        """Await *work*, aborting it as soon as *cancel* fires."""
        if cancel is None:
            await work
            return
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            task.result()
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise RunCancelled(cancel.reason)

    @staticmethod
    def _raise_required(
        report: RunReport, plan: StagePlan, names: tuple[str, ...] | list[str]
    ) -> None:
        for name in names:
            stage = report.stages.get(name)
            if plan.is_required(name) and stage is not None and stage.status is StageStatus.FAILED:
                raise StageRequiredFailed(name, stage.errors)

    @staticmethod
    def _mark_skipped(report: RunReport, plan: StagePlan) -> None:
        for name in plan.stages:
            if name not in report.stages:
                report.stages[name] = StageReport(
                    name=name, status=StageStatus.SKIPPED, required=plan.is_required(name)
                )

    def _transition(self, report: RunReport, state: RunState) -> None:
        report.state = state
        report.history.append(state)
        self._event(report, "state", state.value)
        logger.info("Run %s -> %s", report.run_id, state.value)

    def _error(self, report: RunReport, cause: str) -> None:
        report.cause = cause
        self._transition(report, RunState.ERRORED)
        logger.error("Run %s errored: %s", report.run_id, cause)

    @staticmethod
    def _event(report: RunReport, kind: str, subject: str = "", detail: str = "") -> None:
        report.events.append(
            RunEvent(sequence=len(report.events) + 1, kind=kind, subject=subject, detail=detail)
        )


def _error_suffix(errors: list[str]) -> str:
    return f": {errors[0]}" if errors else ""


def run_sync(orchestrator: Orchestrator, trigger: Trigger, **kwargs: Any) -> RunReport:
    """Blocking wrapper used by the CLI."""
    return asyncio.run(orchestrator.run(trigger, **kwargs))
