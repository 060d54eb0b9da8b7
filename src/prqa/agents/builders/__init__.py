"""Builder agents for prqa."""

from prqa.agents.builders.test_generator import (
    GenerationResult,
    TestGenerationTask,
    TestGenerator,
    select_scenarios,
)

__all__ = [
    "GenerationResult",
    "TestGenerationTask",
    "TestGenerator",
    "select_scenarios",
]
