"""prqa CLI — top-level command group."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from prqa import __version__
from prqa.adapters.coverage import UnrecognizedFormatError, parse_coverage_report
from prqa.agents.analyzers.coverage import (
    analyze_coverage,
    changed_lines_from_diff,
    heuristic_analysis,
)
from prqa.agents.analyzers.requirements import RequirementsDocument
from prqa.agents.debuggers.ci_fixer import CIFailureInfo
from prqa.agents.reporters.terminal import reporter
from prqa.config import CONFIG_FILENAME, QAConfig, load_config, validate_config
from prqa.llm.engine import GatewayFatalError
from prqa.memory.feedback import FeedbackCollector, FeedbackStore, SuggestionCategory, Verdict
from prqa.memory.learning import LearningEngine
from prqa.models.pull_request import PullRequestInfo
from prqa.orchestrator import Orchestrator
from prqa.telemetry import init_sentry
from prqa.triggers import CIFailureEvent, CommentCommand, PullRequestEvent, Trigger
from prqa.utils.diff import extract_changed_files
from prqa.utils.serialization import to_jsonable

logger = logging.getLogger(__name__)
console = Console()

_SENSITIVE_KEYS = frozenset({"api_key", "password", "token", "dsn"})
_MIN_MASKED_VALUE_LENGTH = 8

_PROJECT_PATH = click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)


# ── Helpers ──────────────────────────────────────────────────────


def _ci_mode(ctx: click.Context) -> bool:
    return bool(ctx.obj.get("ci", False)) if ctx.obj else False


def _emit_json(payload: Any) -> None:
    click.echo(json.dumps(to_jsonable(payload), indent=2))


def _load(path: str) -> QAConfig:
    try:
        config = load_config(path)
    except (OSError, yaml.YAMLError, ValueError) as exc:
        reporter.print_error(f"Failed to load configuration: {exc}")
        raise click.Abort from exc
    init_sentry(config.sentry)
    return config


def _load_yml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    return parsed if isinstance(parsed, dict) else {}


def _set_nested_value(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = [part.strip() for part in dotted_key.split(".") if part.strip()]
    if not parts:
        raise ValueError("Configuration key must not be empty.")
    cursor = data
    for part in parts[:-1]:
        existing = cursor.get(part)
        if not isinstance(existing, dict):
            existing = cursor[part] = {}
        cursor = existing
    cursor[parts[-1]] = value


def _mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(data)

    def _mask(node: dict[str, Any]) -> None:
        for key, value in node.items():
            if key in _SENSITIVE_KEYS and isinstance(value, str) and value:
                node[key] = (
                    f"{value[:4]}...{value[-4:]}"
                    if len(value) > _MIN_MASKED_VALUE_LENGTH
                    else "***"
                )
            elif isinstance(value, dict):
                _mask(value)

    _mask(result)
    return result


def _read_text(path: str | None) -> str:
    return Path(path).read_text(encoding="utf-8") if path else ""


def _pull_request(
    config: QAConfig, diff_path: str, *, title: str, body: str, repo: str, number: int
) -> PullRequestInfo:
    owner, _, name = (repo or config.project.name or "local/project").partition("/")
    return PullRequestInfo(
        owner=owner,
        repo=name or owner,
        number=number,
        title=title,
        diff=_read_text(diff_path),
        body=body,
    )


def _orchestrator(config: QAConfig, *, dry_run: bool) -> Orchestrator:
    try:
        return Orchestrator.from_config(config, dry_run=dry_run or None)
    except GatewayFatalError as exc:
        reporter.print_error(str(exc))
        raise click.Abort from exc


def _run_trigger(ctx: click.Context, config: QAConfig, trigger: Trigger, *, dry_run: bool) -> None:
    orchestrator = _orchestrator(config, dry_run=dry_run)
    report = asyncio.run(orchestrator.run(trigger))
    if _ci_mode(ctx):
        _emit_json(report.to_dict())
    else:
        reporter.print_run_report(report)
    if report.errored:
        sys.exit(1)


def _pr_options(func: Any) -> Any:
    options = [
        click.option(
            "--diff",
            "diff_path",
            required=True,
            type=click.Path(exists=True, dir_okay=False),
            help="Unified diff of the pull request.",
        ),
        click.option("--title", default="", help="Pull request title."),
        click.option("--body", default="", help="Pull request description."),
        click.option("--repo", default="", help="Repository as owner/name."),
        click.option("--number", default=0, type=int, help="Pull request number."),
        click.option(
            "--requirements",
            "requirements_path",
            type=click.Path(exists=True, dir_okay=False),
            help="Requirements or acceptance criteria text file.",
        ),
        click.option(
            "--coverage",
            "coverage_path",
            type=click.Path(exists=True, dir_okay=False),
            help="Coverage artifact (lcov, Istanbul, coverage.py, Cobertura, JaCoCo).",
        ),
        click.option(
            "--dry-run", is_flag=True, help="Report intended writes without applying them."
        ),
        _PROJECT_PATH,
    ]
    for option in reversed(options):
        func = option(func)
    return func


# ── Command group ────────────────────────────────────────────────


@click.group()
@click.option(
    "--ci",
    is_flag=True,
    help="CI mode: machine-readable JSON output and exit codes for errored runs.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
@click.version_option(version=__version__, prog_name="prqa")
@click.pass_context
def cli(ctx: click.Context, *, ci: bool, verbose: bool) -> None:
    """prqa — automated QA for pull requests."""
    ctx.ensure_object(dict)
    ctx.obj["ci"] = ci
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        )
    else:
        logging.basicConfig(level=logging.WARNING)


@cli.group("config")
def config_group() -> None:
    """Inspect and edit `.prqa.yml`."""


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@_PROJECT_PATH
def config_set(key: str, value: str, path: str) -> None:
    """Set a configuration key using a dotted path.

    Example:
      prqa config set pipeline.max_correction_rounds 4
    """
    config_file = Path(path) / CONFIG_FILENAME
    data = _load_yml(config_file)
    try:
        _set_nested_value(data, key, yaml.safe_load(value))
    except ValueError as exc:
        reporter.print_error(str(exc))
        raise click.Abort from exc
    config_file.write_text(
        yaml.safe_dump(data, sort_keys=False, default_flow_style=False), encoding="utf-8"
    )
    reporter.print_success(f"Updated {key} in {config_file}")


@config_group.command("show")
@_PROJECT_PATH
@click.option("--json-output", "as_json", is_flag=True, help="Output as JSON instead of YAML.")
@click.option("--no-mask", is_flag=True, help="Show sensitive values unmasked.")
def config_show(path: str, *, as_json: bool, no_mask: bool) -> None:
    """Display the resolved configuration with secrets masked."""
    config = _load(path)
    data = asdict(config)
    data.pop("raw", None)
    if not no_mask:
        data = _mask_sensitive(data)
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


@config_group.command("validate")
@_PROJECT_PATH
def config_validate(path: str) -> None:
    """Check `.prqa.yml` for missing or invalid values."""
    errors = validate_config(_load(path))
    if not errors:
        reporter.print_success("Configuration is valid!")
        return
    reporter.print_error(f"Found {len(errors)} configuration error(s):")
    for index, error in enumerate(errors, start=1):
        console.print(f"  {index}. [red]{error}[/red]")
    raise click.Abort


# ── Pipeline commands ────────────────────────────────────────────


@cli.command()
@_pr_options
@click.option("--silent", is_flag=True, help="Analysis only, without notification.")
@click.option(
    "--document",
    "document_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Text already extracted from a requirements document.",
)
@click.pass_context
def analyze(
    ctx: click.Context,
    diff_path: str,
    title: str,
    body: str,
    repo: str,
    number: int,
    requirements_path: str | None,
    coverage_path: str | None,
    path: str,
    document_path: str | None,
    *,
    dry_run: bool,
    silent: bool,
) -> None:
    """Run a pull request through the full pipeline."""
    config = _load(path)
    trigger = PullRequestEvent(
        pull_request=_pull_request(
            config, diff_path, title=title, body=body, repo=repo, number=number
        ),
        silent=silent,
        requirements_text=_read_text(requirements_path),
        document=(
            RequirementsDocument(text=_read_text(document_path), name=Path(document_path).name)
            if document_path
            else None
        ),
        coverage_artifact=Path(coverage_path).read_bytes() if coverage_path else None,
    )
    _run_trigger(ctx, config, trigger, dry_run=dry_run)


@cli.command()
@click.argument("text")
@_pr_options
@click.pass_context
def command(
    ctx: click.Context,
    text: str,
    diff_path: str,
    title: str,
    body: str,
    repo: str,
    number: int,
    requirements_path: str | None,
    coverage_path: str | None,
    path: str,
    *,
    dry_run: bool,
) -> None:
    """Run a comment command such as "/qa generate tests"."""
    config = _load(path)
    trigger = CommentCommand(
        pull_request=_pull_request(
            config, diff_path, title=title, body=body, repo=repo, number=number
        ),
        text=text,
        requirements_text=_read_text(requirements_path),
        coverage_artifact=Path(coverage_path).read_bytes() if coverage_path else None,
    )
    _run_trigger(ctx, config, trigger, dry_run=dry_run)


@cli.command("ci-fix")
@click.option(
    "--log",
    "log_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Failing job log.",
)
@click.option("--job", default="ci", help="CI job name.")
@click.option(
    "--test", "test_paths", multiple=True, help="Test file involved in the failure (under --path)."
)
@click.option("--failed-test", "failed_tests", multiple=True, help="Name of a failing test.")
@click.option("--dry-run", is_flag=True, help="Report the fix without writing it.")
@_PROJECT_PATH
@click.pass_context
def ci_fix(
    ctx: click.Context,
    log_path: str,
    job: str,
    test_paths: tuple[str, ...],
    failed_tests: tuple[str, ...],
    path: str,
    *,
    dry_run: bool,
) -> None:
    """Classify a CI failure and apply the first fix attempt."""
    config = _load(path)
    root = Path(path)
    test_files = {
        test: (root / test).read_text(encoding="utf-8")
        for test in test_paths
        if (root / test).is_file()
    }
    failure = CIFailureInfo(
        job=job,
        log=_read_text(log_path),
        failed_tests=list(failed_tests),
        test_files=test_files,
    )
    _run_trigger(ctx, config, CIFailureEvent(failure=failure), dry_run=dry_run)


@cli.command()
@click.argument("report_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--changed", "changed", multiple=True, help="Changed file (repeatable).")
@click.option(
    "--diff",
    "diff_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Diff used to find changed files and lines.",
)
@_PROJECT_PATH
@click.pass_context
def coverage(
    ctx: click.Context,
    report_path: str,
    changed: tuple[str, ...],
    diff_path: str | None,
    path: str,
) -> None:
    """Rank under-tested areas of the changed files in a coverage REPORT_PATH."""
    config = _load(path)
    diff = _read_text(diff_path)
    changed_files = list(changed) or extract_changed_files(diff)
    try:
        parsed = parse_coverage_report(Path(report_path).read_bytes())
    except UnrecognizedFormatError as exc:
        if _ci_mode(ctx):
            _emit_json({"error": "UnrecognizedFormat", "detail": str(exc)})
        else:
            reporter.print_error(str(exc))
        sys.exit(1)

    result = analyze_coverage(
        parsed,
        changed_files,
        config=config.coverage,
        changed_lines=changed_lines_from_diff(diff) if diff else None,
    )
    if _ci_mode(ctx):
        _emit_json(result)
    else:
        reporter.print_coverage(result)


@cli.command("coverage-estimate")
@click.option("--diff", "diff_path", required=True, type=click.Path(exists=True, dir_okay=False))
@_PROJECT_PATH
@click.pass_context
def coverage_estimate(ctx: click.Context, diff_path: str, path: str) -> None:
    """Estimate coverage risk from a diff when no report exists."""
    config = _load(path)
    diff = _read_text(diff_path)
    result = heuristic_analysis(extract_changed_files(diff), diff, config=config.coverage)
    if _ci_mode(ctx):
        _emit_json(result)
    else:
        reporter.print_coverage(result)


# ── Feedback ─────────────────────────────────────────────────────


def _store(config: QAConfig) -> FeedbackStore:
    return FeedbackStore.for_project(config.root_path, config.feedback.store_path)


@cli.group("feedback")
def feedback_group() -> None:
    """Record verdicts on suggestions and inspect what was learned."""


@feedback_group.command("record")
@click.argument("subject")
@click.option(
    "--category", required=True, type=click.Choice([c.value for c in SuggestionCategory])
)
@click.option("--verdict", required=True, type=click.Choice([v.value for v in Verdict]))
@click.option("--comment", default="")
@click.option("--repo", default="")
@click.option("--number", default=0, type=int)
@_PROJECT_PATH
@click.pass_context
def feedback_record(
    ctx: click.Context,
    subject: str,
    category: str,
    verdict: str,
    comment: str,
    repo: str,
    number: int,
    path: str,
) -> None:
    """Record a verdict for SUBJECT."""
    collector = FeedbackCollector(_store(_load(path)))
    try:
        entry = collector.record(
            subject,
            SuggestionCategory(category),
            Verdict(verdict),
            comment=comment,
            repo=repo,
            pr_number=number,
        )
    except ValueError as exc:
        reporter.print_error(str(exc))
        raise click.Abort from exc
    if _ci_mode(ctx):
        _emit_json(entry.to_dict())
    else:
        reporter.print_success(f"Recorded {entry.verdict.value} for {entry.subject}")


@feedback_group.command("pending")
@_PROJECT_PATH
@click.pass_context
def feedback_pending(ctx: click.Context, path: str) -> None:
    """List suggestions still awaiting a verdict."""
    pending = FeedbackCollector(_store(_load(path))).collect_pending_feedback()
    if _ci_mode(ctx):
        _emit_json([entry.to_dict() for entry in pending])
    else:
        reporter.print_pending(pending)


@feedback_group.command("stats")
@_PROJECT_PATH
@click.pass_context
def feedback_stats(ctx: click.Context, path: str) -> None:
    """Show acceptance rates and learned prompt guidance."""
    config = _load(path)
    engine = LearningEngine(_store(config), config.feedback)
    stats = engine.stats()
    insights = engine.insights()
    if _ci_mode(ctx):
        _emit_json(
            {
                "stats": stats.to_dict(),
                "insights": insights,
                "prompt_enhancements": engine.prompt_enhancements(),
            }
        )
    else:
        reporter.print_feedback_stats(stats, insights)


if __name__ == "__main__":
    cli()
