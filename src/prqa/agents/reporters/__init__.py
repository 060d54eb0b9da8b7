"""Reporters for prqa output."""

from prqa.agents.reporters.terminal import CLIReporter, reporter

__all__ = ["CLIReporter", "reporter"]
