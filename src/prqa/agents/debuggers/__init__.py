"""Debugging agents for prqa."""

from prqa.agents.debuggers.ci_fixer import (
    AutoFixResult,
    CIFailureInfo,
    CIFixer,
    CIFixTask,
    CIState,
    ExhaustedError,
    FailureClass,
    FixAction,
    FixAttempt,
    FixState,
    FixStateError,
    FixVerdict,
    classify_from_log,
    format_fix_summary,
)

__all__ = [
    "AutoFixResult",
    "CIFailureInfo",
    "CIFixTask",
    "CIFixer",
    "CIState",
    "ExhaustedError",
    "FailureClass",
    "FixAction",
    "FixAttempt",
    "FixState",
    "FixStateError",
    "FixVerdict",
    "classify_from_log",
    "format_fix_summary",
]
