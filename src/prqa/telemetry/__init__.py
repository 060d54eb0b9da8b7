"""Telemetry integrations for prqa."""

from prqa.telemetry.sentry_integration import (
    init_sentry,
    is_sentry_enabled,
    record_metric_count,
    record_metric_distribution,
    scrub_event,
    scrub_text,
    set_run_tags,
    start_span,
)

__all__ = [
    "init_sentry",
    "is_sentry_enabled",
    "record_metric_count",
    "record_metric_distribution",
    "scrub_event",
    "scrub_text",
    "set_run_tags",
    "start_span",
]
