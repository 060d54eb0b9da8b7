"""Terminal reporter with rich output formatting."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prqa.models.report import StageStatus

if TYPE_CHECKING:
    from prqa.agents.analyzers.coverage import CoverageAnalysisResult
    from prqa.agents.debuggers.ci_fixer import AutoFixResult
    from prqa.memory.feedback import FeedbackEntry
    from prqa.memory.learning import FeedbackStats, LearningInsights
    from prqa.models.report import RunReport

console = Console()

_STATUS_STYLES = {
    StageStatus.SUCCEEDED: ("green", "✓"),
    StageStatus.DEGRADED: ("yellow", "⚠"),
    StageStatus.FAILED: ("red", "✗"),
    StageStatus.SKIPPED: ("dim", "⊘"),
}
_PRIORITY_COLORS = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}
_MAX_REASON_LENGTH = 60
_MAX_ERROR_LENGTH = 80


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _percent(rate: float) -> str:
    return f"{rate * 100:.0f}%"


class CLIReporter:
    """Rich terminal output for run reports, coverage and feedback."""

    def __init__(self) -> None:
        self.console = console

    def print_header(self, title: str) -> None:
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

    # ── Run reports ───────────────────────────────────────────────

    def print_run_report(self, report: RunReport) -> None:
        """Print stage outcomes, the analysis headline and usage for one run."""
        state_color = "red" if report.errored else "green"
        self.console.print()
        self.console.print(
            Panel(
                f"[bold white]Run {report.run_id}[/bold white]  "
                f"[dim]{report.trigger}[/dim]  "
                f"[{state_color}]{report.state.value}[/{state_color}]",
                border_style="cyan",
                padding=(0, 2),
            )
        )
        if report.cause:
            self.print_error(report.cause)

        table = Table(show_header=True, header_style="bold")
        table.add_column("Stage")
        table.add_column("Status")
        table.add_column("Required", justify="center")
        table.add_column("Time", justify="right")
        table.add_column("Detail")
        for stage in report.stages.values():
            color, icon = _STATUS_STYLES[stage.status]
            table.add_row(
                stage.name,
                f"[{color}]{icon} {stage.status.value}[/{color}]",
                "yes" if stage.required else "",
                f"{stage.duration_ms}ms",
                _truncate(stage.errors[0], _MAX_ERROR_LENGTH) if stage.errors else "",
            )
        self.console.print(table)

        analysis = report.payload_of("analysis")
        if analysis is not None:
            self.console.print(
                f"\n[bold]{analysis.summary.title}[/bold]\n"
                f"Risk score: [bold]{analysis.risk_score}[/bold]/100  "
                f"Recommendation: [bold]{analysis.merge_recommendation.value}[/bold]  "
                f"Overall risk: {analysis.overall_risk.value}"
            )
            if analysis.product_impact:
                self.print_info(analysis.product_impact)

        correction = report.payload_of("tests")
        if correction is not None:
            self.console.print(
                f"\nTests: {len(correction.accepted)} accepted, "
                f"{len(correction.dropped)} dropped in {correction.rounds_used} round(s)"
            )

        help_text = report.payload_of("help")
        if help_text:
            self.console.print(help_text)

        fix = report.payload_of("ci_fix")
        if fix is not None:
            self.print_fix_result(fix)

        if report.usage.get("calls"):
            self.print_usage(report.usage)
        if not report.notify:
            self.print_info("Silent run: no notification will be delivered.")

    def print_usage(self, usage: dict[str, Any]) -> None:
        self.print_info(
            f"Model calls: {usage['calls']} ({usage.get('failed_calls', 0)} failed, "
            f"{usage.get('cached_calls', 0)} cached), "
            f"tokens: {usage.get('total_tokens', 0)}, "
            f"cost: ${usage.get('cost_usd', 0.0):.4f}"
        )

    # ── CI fixes ──────────────────────────────────────────────────

    def print_fix_result(self, result: AutoFixResult) -> None:
        verdict = result.verdict.value if result.verdict else "awaiting CI"
        color = {"fixed": "green", "awaiting CI": "cyan"}.get(verdict, "yellow")
        self.console.print(
            f"\nCI fix for [bold]{result.job}[/bold]: "
            f"[{color}]{result.state.value} ({verdict})[/{color}]  "
            f"[dim]{result.classification.value} -> {result.action.value}[/dim]"
        )
        for attempt in result.attempts:
            outcome = {True: "[green]passed[/green]", False: "[red]failed[/red]"}.get(
                attempt.success, "[cyan]pending[/cyan]"
            )
            detail = attempt.summary or attempt.error
            self.console.print(
                f"  Attempt {attempt.index}: {outcome} {attempt.path} "
                f"[dim]{_truncate(detail, _MAX_REASON_LENGTH)}[/dim]"
            )
        if result.message:
            self.print_info(result.message)

    # ── Coverage ──────────────────────────────────────────────────

    def print_coverage(self, result: CoverageAnalysisResult) -> None:
        if result.found:
            overall = (
                f"{result.overall_line_coverage:.1f}%"
                if result.overall_line_coverage is not None
                else "n/a"
            )
            self.print_header(f"Coverage ({result.report_format}, overall {overall})")
        else:
            self.print_header("Coverage (heuristic, no report)")
            if result.heuristic is not None:
                self.console.print(f"Estimated risk: {result.heuristic.estimated_risk.value}")
                for line in result.heuristic.reasoning:
                    self.print_info(f"- {line}")

        if not result.suggestions:
            self.print_success("No under-tested areas in the changed files")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Priority")
        table.add_column("File")
        table.add_column("Area")
        table.add_column("Reason")
        for suggestion in result.suggestions:
            color = _PRIORITY_COLORS.get(suggestion.priority.value, "yellow")
            table.add_row(
                f"[{color}]{suggestion.priority.value}[/{color}]",
                suggestion.file,
                suggestion.area,
                _truncate(suggestion.reason, _MAX_REASON_LENGTH),
            )
        self.console.print(table)

    # ── Feedback ──────────────────────────────────────────────────

    def print_feedback_stats(self, stats: FeedbackStats, insights: LearningInsights) -> None:
        self.print_header("Feedback")
        self.console.print(
            f"Subjects: {stats.total}  Resolved: {stats.resolved}  "
            f"Acceptance: {_percent(stats.acceptance_rate)}  "
            f"Helpful: {stats.helpful_percentage:.0f}%"
        )
        if stats.by_category:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Category")
            table.add_column("Accepted", justify="right")
            table.add_column("Rejected", justify="right")
            table.add_column("Modified", justify="right")
            table.add_column("Pending", justify="right")
            table.add_column("Acceptance", justify="right")
            for name, category in stats.by_category.items():
                table.add_row(
                    name,
                    str(category.accepted),
                    str(category.rejected),
                    str(category.modified),
                    str(category.pending),
                    _percent(category.acceptance_rate),
                )
            self.console.print(table)

        if insights.be_more_conservative:
            self.print_warning("Suggestions are often rejected: prompts ask for more caution")
        if insights.be_more_rigorous:
            self.print_warning("Suggestions are often modified: prompts ask for more rigor")
        for category in insights.frequent_false_positives:
            self.print_warning(f"Frequent false positives: {category}")
        for category in insights.reliable_categories:
            self.print_success(f"Reliable: {category}")

    def print_pending(self, entries: list[FeedbackEntry]) -> None:
        if not entries:
            self.print_success("No suggestions awaiting feedback")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("Subject")
        table.add_column("Category")
        table.add_column("Run")
        table.add_column("Since")
        for entry in entries:
            table.add_row(entry.subject, entry.category.value, entry.run_id, entry.timestamp)
        self.console.print(table)


reporter = CLIReporter()
