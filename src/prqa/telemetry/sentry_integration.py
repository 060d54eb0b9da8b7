"""Opt-in Sentry telemetry for prqa runs.

Nothing is sent unless ``sentry.enabled: true`` is set in ``.prqa.yml`` (or
``PRQA_SENTRY_ENABLED=true``) and a DSN is configured.  Every helper in this
module is a no-op until :func:`init_sentry` succeeds, so callers never check
the flag themselves.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from typing import TYPE_CHECKING, Any

import sentry_sdk
import sentry_sdk.metrics
from sentry_sdk.integrations.logging import LoggingIntegration

from prqa import __version__

if TYPE_CHECKING:
    from types import TracebackType

    from prqa.config import SentryConfig

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_state: dict[str, bool] = {"initialized": False}

_SECRET_VALUE_RE = re.compile(
    r"(api[_-]?key|password|secret|token|dsn|authorization|cookie)\s*[:=]\s*\S+",
    re.IGNORECASE,
)
_PROVIDER_KEY_RE = re.compile(r"\b(?:sk|pk|rk)-[A-Za-z0-9_-]{12,}")
_HOME_RE = re.compile(r"/(?:home|Users)/[^/]+")

_SECRET_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "authorization",
        "cookie",
        "dsn",
        "password",
        "secret",
        "token",
    }
)


def init_sentry(config: SentryConfig) -> bool:
    """Initialize the Sentry SDK when *config* enables it.

    Idempotent and thread-safe.  Returns whether telemetry is active.
    """
    with _init_lock:
        if _state["initialized"]:
            return True
        if not config.enabled:
            logger.debug("Sentry disabled (sentry.enabled is false)")
            return False
        if not config.dsn:
            logger.warning("Sentry enabled but no DSN configured")
            return False

        environment = config.environment or ("ci" if os.environ.get("CI") else "local")
        options: dict[str, Any] = {
            "dsn": config.dsn,
            "release": f"prqa@{__version__}",
            "environment": environment,
            "traces_sample_rate": config.traces_sample_rate,
            "send_default_pii": False,
            "server_name": "",
            "before_send": _before_send,
            "before_send_transaction": _before_send,
            "in_app_include": ["prqa"],
            "in_app_exclude": ["litellm", "sentry_sdk"],
            "integrations": [LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        }
        if config.enable_logs:
            options["enable_logs"] = True

        sentry_sdk.init(**options)
        _state["initialized"] = True
        logger.info(
            "Sentry initialized (env=%s, tracing=%.2f, logs=%s)",
            environment,
            config.traces_sample_rate,
            config.enable_logs,
        )
        return True


def is_sentry_enabled() -> bool:
    return _state["initialized"]


# ── Scrubbing ────────────────────────────────────────────────────


def scrub_text(value: str) -> str:
    """Redact credentials and home directories from *value*."""
    value = _SECRET_VALUE_RE.sub(r"\1=[REDACTED]", value)
    value = _PROVIDER_KEY_RE.sub("[REDACTED]", value)
    return _HOME_RE.sub("/~", value)


def scrub_mapping(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in _SECRET_KEYS:
            result[key] = "[REDACTED]"
        elif isinstance(value, str):
            result[key] = scrub_text(value)
        elif isinstance(value, dict):
            result[key] = scrub_mapping(value)
        else:
            result[key] = value
    return result


def scrub_event(event: dict[str, Any]) -> dict[str, Any]:
    """Remove secrets, local variables and host details from a Sentry event."""
    exception = event.get("exception")
    if isinstance(exception, dict):
        for value in exception.get("values", []):
            if isinstance(value.get("value"), str):
                value["value"] = scrub_text(value["value"])
            frames = (value.get("stacktrace") or {}).get("frames", [])
            for frame in frames:
                # Locals can hold prompts, diffs or keys.
                frame.pop("vars", None)
                for key in ("filename", "abs_path"):
                    if isinstance(frame.get(key), str):
                        frame[key] = _HOME_RE.sub("/~", frame[key])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for crumb in breadcrumbs.get("values", []):
            if isinstance(crumb.get("message"), str):
                crumb["message"] = scrub_text(crumb["message"])
            if isinstance(crumb.get("data"), dict):
                crumb["data"] = scrub_mapping(crumb["data"])

    for section in ("tags", "extra", "contexts"):
        if isinstance(event.get(section), dict):
            event[section] = scrub_mapping(event[section])

    event.pop("server_name", None)
    return event


def _before_send(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any] | None:
    return scrub_event(event)


# ── Metrics and tracing ──────────────────────────────────────────


def record_metric_count(name: str, value: int = 1, **attrs: str | int | float) -> None:
    """Emit a counter metric."""
    if not _state["initialized"]:
        return
    sentry_sdk.metrics.count(name, float(value), attributes=dict(attrs) if attrs else None)


def record_metric_distribution(
    name: str, value: float, unit: str = "", **attrs: str | int | float
) -> None:
    """Emit a distribution metric, e.g. a stage duration."""
    if not _state["initialized"]:
        return
    sentry_sdk.metrics.distribution(
        name, value, unit=unit or None, attributes=dict(attrs) if attrs else None
    )


def set_run_tags(run_id: str, trigger: str) -> None:
    if not _state["initialized"]:
        return
    sentry_sdk.set_tag("prqa.run_id", run_id)
    sentry_sdk.set_tag("prqa.trigger", trigger)


class _NoOpSpan:
    """Stand-in span used while telemetry is disabled."""

    def __enter__(self) -> _NoOpSpan:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        pass

    def set_data(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: str) -> None:
        pass


def start_span(op: str, name: str) -> Any:
    """Start a span around one pipeline stage; a no-op span when disabled."""
    if not _state["initialized"]:
        return _NoOpSpan()
    return sentry_sdk.start_span(op=op, name=name)
