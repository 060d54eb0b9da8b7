"""Side-effecting executors for prqa."""

from prqa.agents.executors.autonomous import (
    ActionKind,
    ActionResult,
    ActionStatus,
    AutonomousExecutionResult,
    AutonomousExecutor,
    EnvelopeUsage,
    ExecutionPartialFailure,
    FileSystemWorkspace,
    ProposedAction,
    SafetyEnvelope,
    Workspace,
)

__all__ = [
    "ActionKind",
    "ActionResult",
    "ActionStatus",
    "AutonomousExecutionResult",
    "AutonomousExecutor",
    "EnvelopeUsage",
    "ExecutionPartialFailure",
    "FileSystemWorkspace",
    "ProposedAction",
    "SafetyEnvelope",
    "Workspace",
]
