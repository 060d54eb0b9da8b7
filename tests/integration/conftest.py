"""Shared fixtures for end-to-end pipeline runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from prqa.agents.executors.autonomous import AutonomousExecutor, SafetyEnvelope
from prqa.config import ProjectConfig, QAConfig
from prqa.memory.feedback import FeedbackStore
from prqa.orchestrator import Orchestrator

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import MemoryWorkspace, ScriptedEngine

    from prqa.llm.tracked_engine import TrackedLLMEngine
    from prqa.llm.usage import UsageLedger

# ── Marker registration ──────────────────────────────────────────


def pytest_configure(config: pytest.Config) -> None:
    """Register the ``integration`` marker."""
    config.addinivalue_line("markers", "integration: integration tests")


# ── Helpers ──────────────────────────────────────────────────────


def fixed_source(source: str) -> str:
    """Return *source* with the missing ``expect`` import added."""
    return source.replace("{ test }", "{ test, expect }")


# ── Pipeline fixtures ────────────────────────────────────────────


@pytest.fixture()
def qa_config(tmp_path: Path) -> QAConfig:
    return QAConfig(project=ProjectConfig(root=str(tmp_path)))


@pytest.fixture()
def feedback_store(tmp_path: Path) -> FeedbackStore:
    return FeedbackStore.for_project(tmp_path)


@pytest.fixture()
def orchestrator(
    tracked: TrackedLLMEngine,
    workspace: MemoryWorkspace,
    feedback_store: FeedbackStore,
    qa_config: QAConfig,
    ledger: UsageLedger,
) -> Orchestrator:
    """Orchestrator over the scripted gateway and an in-memory workspace."""
    executor = AutonomousExecutor(workspace, SafetyEnvelope.from_config(qa_config.executor))
    return Orchestrator(
        tracked,
        executor=executor,
        feedback_store=feedback_store,
        config=qa_config,
        ledger=ledger,
    )


@pytest.fixture()
def full_run_script(
    scripted: ScriptedEngine,
    analysis_payload: dict[str, Any],
    generation_payload: dict[str, Any],
    sources: dict[str, str],
) -> ScriptedEngine:
    """Script a full run: analysis, generation and one regeneration."""
    scripted.script("pr_analysis", analysis_payload)
    scripted.script("test_generation", generation_payload)
    scripted.script(
        "test_regeneration", {"content": fixed_source(sources["spec_missing_expect"])}
    )
    return scripted
