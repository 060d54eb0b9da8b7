"""Configuration parsing from ``.prqa.yml``."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".prqa.yml"

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")

_TRIGGER_MODES = ("hybrid", "auto", "command")
_ACTION_KINDS = ("write_file", "apply_patch", "commit")
_TRUTHY = {True, "true", "1", "yes"}


def _resolve_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var = match.group(1)
        resolved = os.environ.get(var)
        if resolved is None:
            logger.warning("Environment variable %s is not set (referenced in config)", var)
            return ""
        return resolved

    return _ENV_VAR_RE.sub(_replace, value)


def _resolve_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively resolve environment variables in a dictionary."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            result[key] = _resolve_env_vars(value)
        elif isinstance(value, dict):
            result[key] = _resolve_dict(value)
        elif isinstance(value, list):
            result[key] = [
                _resolve_env_vars(item) if isinstance(item, str) else item for item in value
            ]
        else:
            result[key] = value
    return result


@dataclass
class ProjectConfig:
    """Project-level configuration."""

    root: str
    """Project root directory."""

    name: str = ""
    """Repository name used in reports (``owner/repo``)."""


@dataclass
class LLMConfig:
    """Model gateway configuration."""

    provider: str = "openai"
    """LLM provider name (openai, anthropic, ollama, etc.)."""

    model: str = ""
    """Model identifier (e.g. gpt-4o, claude-sonnet-4-5-20250514)."""

    api_key: str = ""
    """API key for the provider (supports ${ENV_VAR} expansion)."""

    base_url: str = ""
    """Custom base URL (useful for Ollama or proxied endpoints)."""

    temperature: float = 0.2
    """Default sampling temperature."""

    max_tokens: int = 4096
    """Default maximum tokens to generate."""

    timeout: float = 120.0
    """Per-call timeout in seconds."""

    requests_per_minute: int = 60
    """Rate limit: maximum requests per minute."""

    max_retries: int = 3
    """Maximum number of retry attempts on transient failures."""

    cache_enabled: bool = True
    """Serve repeated requests with the same cache key from memory."""

    @property
    def is_configured(self) -> bool:
        """Return True when enough info is present for generation."""
        if self.provider == "ollama" or self.model.startswith("ollama/"):
            return bool(self.model)
        return bool(self.model and self.api_key)


@dataclass
class PipelineConfig:
    """Pipeline policy constants."""

    trigger_mode: str = "hybrid"
    """``hybrid``: PR events run silently, commands notify.
    ``auto``: PR events run and notify.  ``command``: only commands run."""

    max_correction_rounds: int = 3
    """Rounds of the generate/validate/regenerate loop."""

    max_fix_attempts: int = 2
    """CI fix attempts before giving up."""

    command_prefix: str = "/qa"
    """Prefix that marks a PR comment as a command."""

    max_diff_chars: int = 15000
    """Diffs longer than this are truncated before prompting."""

    max_scenarios: int = 8
    """Maximum scenarios turned into generated tests per run."""


@dataclass
class ExecutorConfig:
    """Safety envelope of the autonomous executor."""

    enabled: bool = True
    """When False, validated tests are reported but never written."""

    dry_run: bool = False
    """Report intended actions without applying them."""

    allowed_actions: list[str] = field(default_factory=lambda: ["write_file", "apply_patch"])
    """Action kinds the executor may perform."""

    max_files: int = 20
    """Maximum files touched per run."""

    max_bytes: int = 512_000
    """Maximum total bytes written per run."""

    output_dir: str = "tests/e2e"
    """Directory under which generated tests are laid out."""


@dataclass
class CoverageConfig:
    """Coverage analysis thresholds."""

    report_path: str = ""
    """Default coverage artifact, relative to the project root."""

    line_threshold: float = 50.0
    """Minimum line coverage expected for ordinary files."""

    critical_threshold: float = 80.0
    """Minimum line coverage expected for critical-path files."""

    branch_threshold: float = 70.0
    """Minimum branch coverage before a suggestion is raised."""

    max_suggestions: int = 10
    """Cap on the number of suggestions returned."""


@dataclass
class FeedbackConfig:
    """Feedback store and learning thresholds."""

    store_path: str = ".prqa/feedback.jsonl"
    """JSON Lines feedback log, relative to the project root."""

    min_samples: int = 5
    """Minimum resolved entries in a category before it yields an insight."""

    rejection_threshold: float = 0.6
    """Rejection rate above which a category counts as a frequent false positive."""

    acceptance_threshold: float = 0.8
    """Acceptance rate above which a category counts as reliable."""


@dataclass
class SentryConfig:
    """Sentry error monitoring and observability configuration."""

    enabled: bool = False
    """Opt-in flag. No Sentry data sent unless True."""

    dsn: str = ""
    """Sentry DSN (Data Source Name)."""

    traces_sample_rate: float = 0.0
    """Fraction of transactions sent for tracing (0.0-1.0). 0 = disabled."""

    enable_logs: bool = False
    """Send structured logs to Sentry."""

    environment: str = ""
    """Override environment tag (auto-detected if empty)."""

    send_default_pii: bool = False
    """Never enable by default. Kept False for privacy."""


@dataclass
class QAConfig:
    """Complete configuration from ``.prqa.yml``."""

    project: ProjectConfig
    """Project configuration."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    """Model gateway configuration."""

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    """Pipeline policy constants."""

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    """Autonomous executor safety envelope."""

    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    """Coverage thresholds."""

    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    """Feedback and learning configuration."""

    sentry: SentryConfig = field(default_factory=SentryConfig)
    """Sentry observability configuration."""

    raw: dict[str, Any] = field(default_factory=dict)
    """Raw parsed YAML for extension/debugging."""

    @property
    def root_path(self) -> Path:
        return Path(self.project.root)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_llm_config(raw: dict[str, Any]) -> LLMConfig:
    """Parse LLM configuration from raw YAML."""
    llm_raw = _section(raw, "llm")

    return LLMConfig(
        provider=str(llm_raw.get("provider", os.environ.get("PRQA_LLM_PROVIDER", "openai"))),
        model=str(llm_raw.get("model", os.environ.get("PRQA_LLM_MODEL", ""))),
        api_key=str(llm_raw.get("api_key", os.environ.get("PRQA_LLM_API_KEY", ""))),
        base_url=str(llm_raw.get("base_url", os.environ.get("PRQA_LLM_BASE_URL", ""))),
        temperature=float(llm_raw.get("temperature", 0.2)),
        max_tokens=int(llm_raw.get("max_tokens", 4096)),
        timeout=float(llm_raw.get("timeout", 120.0)),
        requests_per_minute=int(llm_raw.get("requests_per_minute", 60)),
        max_retries=int(llm_raw.get("max_retries", 3)),
        cache_enabled=llm_raw.get("cache_enabled", True) in _TRUTHY,
    )


def _parse_pipeline_config(raw: dict[str, Any]) -> PipelineConfig:
    """Parse pipeline configuration from raw YAML."""
    pipeline_raw = _section(raw, "pipeline")

    return PipelineConfig(
        trigger_mode=str(pipeline_raw.get("trigger_mode", "hybrid")).lower(),
        max_correction_rounds=int(pipeline_raw.get("max_correction_rounds", 3)),
        max_fix_attempts=int(pipeline_raw.get("max_fix_attempts", 2)),
        command_prefix=str(pipeline_raw.get("command_prefix", "/qa")),
        max_diff_chars=int(pipeline_raw.get("max_diff_chars", 15000)),
        max_scenarios=int(pipeline_raw.get("max_scenarios", 8)),
    )


def _parse_executor_config(raw: dict[str, Any]) -> ExecutorConfig:
    """Parse executor safety envelope from raw YAML."""
    executor_raw = _section(raw, "executor")
    defaults = ExecutorConfig()
    allowed = executor_raw.get("allowed_actions", defaults.allowed_actions)

    return ExecutorConfig(
        enabled=executor_raw.get("enabled", True) in _TRUTHY,
        dry_run=executor_raw.get("dry_run", False) in _TRUTHY,
        allowed_actions=[str(a) for a in allowed] if isinstance(allowed, list) else [],
        max_files=int(executor_raw.get("max_files", defaults.max_files)),
        max_bytes=int(executor_raw.get("max_bytes", defaults.max_bytes)),
        output_dir=str(executor_raw.get("output_dir", defaults.output_dir)),
    )


def _parse_coverage_config(raw: dict[str, Any]) -> CoverageConfig:
    """Parse coverage configuration from raw YAML."""
    coverage_raw = _section(raw, "coverage")

    return CoverageConfig(
        report_path=str(coverage_raw.get("report_path", "")),
        line_threshold=float(coverage_raw.get("line_threshold", 50.0)),
        critical_threshold=float(coverage_raw.get("critical_threshold", 80.0)),
        branch_threshold=float(coverage_raw.get("branch_threshold", 70.0)),
        max_suggestions=int(coverage_raw.get("max_suggestions", 10)),
    )


def _parse_feedback_config(raw: dict[str, Any]) -> FeedbackConfig:
    """Parse feedback configuration from raw YAML."""
    feedback_raw = _section(raw, "feedback")

    return FeedbackConfig(
        store_path=str(feedback_raw.get("store_path", ".prqa/feedback.jsonl")),
        min_samples=int(feedback_raw.get("min_samples", 5)),
        rejection_threshold=float(feedback_raw.get("rejection_threshold", 0.6)),
        acceptance_threshold=float(feedback_raw.get("acceptance_threshold", 0.8)),
    )


def _parse_sentry_config(raw: dict[str, Any]) -> SentryConfig:
    """Parse Sentry configuration from raw YAML."""
    sentry_raw = _section(raw, "sentry")

    enabled_raw = sentry_raw.get("enabled", os.environ.get("PRQA_SENTRY_ENABLED", ""))

    return SentryConfig(
        enabled=enabled_raw in _TRUTHY,
        dsn=str(sentry_raw.get("dsn", os.environ.get("PRQA_SENTRY_DSN", ""))),
        traces_sample_rate=float(
            sentry_raw.get(
                "traces_sample_rate",
                os.environ.get("PRQA_SENTRY_TRACES_SAMPLE_RATE", "0.0"),
            )
        ),
        enable_logs=sentry_raw.get("enable_logs", False) in _TRUTHY,
        environment=str(sentry_raw.get("environment", "")),
        send_default_pii=False,
    )


def load_config(root: str | Path) -> QAConfig:
    """Load and parse the complete ``.prqa.yml`` configuration.

    Falls back to sensible defaults and environment variables when
    the YAML file is missing or incomplete.
    """
    root_path = Path(root).resolve()
    config_file = root_path / CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_file.is_file():
        text = config_file.read_text(encoding="utf-8")
        parsed = yaml.safe_load(text)
        if isinstance(parsed, dict):
            raw = _resolve_dict(parsed)

    project_raw = _section(raw, "project")
    project = ProjectConfig(
        root=str(project_raw.get("root", root_path)),
        name=str(project_raw.get("name", "")),
    )

    return QAConfig(
        project=project,
        llm=_parse_llm_config(raw),
        pipeline=_parse_pipeline_config(raw),
        executor=_parse_executor_config(raw),
        coverage=_parse_coverage_config(raw),
        feedback=_parse_feedback_config(raw),
        sentry=_parse_sentry_config(raw),
        raw=raw,
    )


# ── Validation ────────────────────────────────────────────────────


def _validate_llm_config(llm: LLMConfig) -> list[str]:
    """Validate LLM configuration fields."""
    errors: list[str] = []

    if not llm.model:
        errors.append("llm.model is required (set it in .prqa.yml or PRQA_LLM_MODEL)")

    max_temperature = 2.0
    if llm.temperature < 0 or llm.temperature > max_temperature:
        errors.append(
            f"llm.temperature should be between 0 and {max_temperature} "
            f"(got: {llm.temperature})"
        )

    if llm.max_tokens < 1:
        errors.append(f"llm.max_tokens must be positive (got: {llm.max_tokens})")

    if llm.timeout <= 0:
        errors.append(f"llm.timeout must be positive (got: {llm.timeout})")

    if llm.max_retries < 0:
        errors.append(f"llm.max_retries must be non-negative (got: {llm.max_retries})")

    if llm.requests_per_minute < 1:
        errors.append(
            f"llm.requests_per_minute must be at least 1 (got: {llm.requests_per_minute})"
        )

    return errors


def _validate_pipeline_config(pipeline: PipelineConfig) -> list[str]:
    """Validate pipeline policy settings."""
    errors: list[str] = []

    if pipeline.trigger_mode not in _TRIGGER_MODES:
        errors.append(
            f"pipeline.trigger_mode must be one of: {', '.join(_TRIGGER_MODES)} "
            f"(got: {pipeline.trigger_mode})"
        )

    if pipeline.max_correction_rounds < 1:
        errors.append(
            "pipeline.max_correction_rounds must be at least 1 "
            f"(got: {pipeline.max_correction_rounds})"
        )

    if pipeline.max_fix_attempts < 1:
        errors.append(
            f"pipeline.max_fix_attempts must be at least 1 (got: {pipeline.max_fix_attempts})"
        )

    if not pipeline.command_prefix.startswith("/"):
        errors.append(
            f"pipeline.command_prefix must start with '/' (got: {pipeline.command_prefix})"
        )

    if pipeline.max_diff_chars < 1:
        errors.append(f"pipeline.max_diff_chars must be positive (got: {pipeline.max_diff_chars})")

    return errors


def _validate_executor_config(executor: ExecutorConfig) -> list[str]:
    """Validate the executor safety envelope."""
    errors: list[str] = []

    unknown = [a for a in executor.allowed_actions if a not in _ACTION_KINDS]
    if unknown:
        errors.append(
            f"executor.allowed_actions contains unknown kinds: {', '.join(unknown)} "
            f"(valid: {', '.join(_ACTION_KINDS)})"
        )

    if executor.max_files < 0:
        errors.append(f"executor.max_files must be non-negative (got: {executor.max_files})")

    if executor.max_bytes < 0:
        errors.append(f"executor.max_bytes must be non-negative (got: {executor.max_bytes})")

    if Path(executor.output_dir).is_absolute() or ".." in Path(executor.output_dir).parts:
        errors.append(
            f"executor.output_dir must be relative to the project root (got: {executor.output_dir})"
        )

    return errors


def _validate_coverage_config(coverage: CoverageConfig) -> list[str]:
    """Validate coverage threshold settings."""
    max_percentage = 100.0
    errors: list[str] = []

    for name in ("line_threshold", "critical_threshold", "branch_threshold"):
        value = getattr(coverage, name)
        if not 0.0 <= value <= max_percentage:
            errors.append(f"coverage.{name} must be between 0 and 100 (got: {value})")

    if coverage.max_suggestions < 1:
        errors.append(
            f"coverage.max_suggestions must be at least 1 (got: {coverage.max_suggestions})"
        )

    return errors


def _validate_feedback_config(feedback: FeedbackConfig) -> list[str]:
    """Validate feedback thresholds."""
    errors: list[str] = []

    if feedback.min_samples < 1:
        errors.append(f"feedback.min_samples must be at least 1 (got: {feedback.min_samples})")

    for name in ("rejection_threshold", "acceptance_threshold"):
        value = getattr(feedback, name)
        if not 0.0 <= value <= 1.0:
            errors.append(f"feedback.{name} must be between 0.0 and 1.0 (got: {value})")

    return errors


def _validate_sentry_config(sentry: SentryConfig) -> list[str]:
    """Validate Sentry configuration."""
    errors: list[str] = []

    if sentry.enabled and not sentry.dsn:
        errors.append("sentry.dsn is required when sentry.enabled is true")

    if not 0.0 <= sentry.traces_sample_rate <= 1.0:
        errors.append(
            f"sentry.traces_sample_rate must be between 0.0 and 1.0 "
            f"(got: {sentry.traces_sample_rate})"
        )

    return errors


def validate_config(config: QAConfig) -> list[str]:
    """Validate the configuration and return a list of error messages.

    Returns an empty list if the configuration is valid.
    """
    errors: list[str] = []

    if not config.project.root:
        errors.append("project.root is required")

    errors.extend(_validate_llm_config(config.llm))
    errors.extend(_validate_pipeline_config(config.pipeline))
    errors.extend(_validate_executor_config(config.executor))
    errors.extend(_validate_coverage_config(config.coverage))
    errors.extend(_validate_feedback_config(config.feedback))
    errors.extend(_validate_sentry_config(config.sentry))

    return errors
