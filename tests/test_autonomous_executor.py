"""Tests for the AutonomousExecutor and its safety envelope."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from prqa.agents.executors.autonomous import (
    ActionKind,
    ActionStatus,
    AutonomousExecutor,
    EnvelopeUsage,
    ExecutionPartialFailure,
    FileSystemWorkspace,
    ProposedAction,
    SafetyEnvelope,
)
from prqa.config import ExecutorConfig
from prqa.utils.cancellation import CancellationToken

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import MemoryWorkspace


def _write(path: str, content: str = "x", subject: str = "") -> ProposedAction:
    return ProposedAction(ActionKind.WRITE_FILE, path=path, content=content, subject=subject)


_ALL = frozenset(ActionKind)


# ── Envelope ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_writes_apply_and_report_per_action(workspace: MemoryWorkspace) -> None:
    workspace.files.update({"a.ts": "old\n"})
    executor = AutonomousExecutor(workspace)

    result = await executor.execute([_write("a.ts", "new\n"), _write("b.ts", "b\n")])

    assert [r.status for r in result.results] == [ActionStatus.APPLIED, ActionStatus.APPLIED]
    assert result.applied_paths == ["a.ts", "b.ts"]
    assert workspace.files == {"a.ts": "new\n", "b.ts": "b\n"}
    assert "-old" in result.results[0].diff
    assert "+new" in result.results[0].diff
    result.raise_for_failures()


@pytest.mark.asyncio
async def test_disallowed_kind_is_skipped(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace)

    result = await executor.execute(
        [_write("a.ts"), ProposedAction(ActionKind.COMMIT, message="add tests")]
    )

    assert result.results[1].status is ActionStatus.SKIPPED
    assert "'commit' is not allowed" in result.results[1].error
    assert workspace.commits == []


@pytest.mark.asyncio
async def test_file_ceiling_counts_distinct_paths_in_order(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace, SafetyEnvelope(max_files=2))

    result = await executor.execute(
        [_write("a.ts"), _write("b.ts"), _write("a.ts", "y"), _write("c.ts")]
    )

    assert [r.status for r in result.results] == [
        ActionStatus.APPLIED,
        ActionStatus.APPLIED,
        ActionStatus.APPLIED,
        ActionStatus.SKIPPED,
    ]
    assert "file ceiling of 2" in result.results[3].error
    assert "c.ts" not in workspace.files


@pytest.mark.asyncio
async def test_byte_ceiling(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace, SafetyEnvelope(max_bytes=10))

    result = await executor.execute([_write("a.ts", "123456"), _write("b.ts", "123456"),
                                     _write("c.ts", "1234")])

    assert [r.status for r in result.results] == [
        ActionStatus.APPLIED,
        ActionStatus.SKIPPED,
        ActionStatus.APPLIED,
    ]
    assert "byte ceiling of 10" in result.results[1].error


@pytest.mark.asyncio
async def test_ceilings_span_batches_sharing_usage(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace, SafetyEnvelope(max_files=2, max_bytes=10))
    usage = EnvelopeUsage()

    first = await executor.execute([_write("a.ts", "1234"), _write("b.ts", "1234")], usage=usage)
    second = await executor.execute([_write("c.ts", "1")], usage=usage)
    third = await executor.execute([_write("a.ts", "12345")], usage=usage)

    assert first.all_succeeded
    assert second.results[0].status is ActionStatus.SKIPPED
    assert "file ceiling of 2" in second.results[0].error
    assert third.results[0].status is ActionStatus.SKIPPED
    assert "byte ceiling of 10" in third.results[0].error
    assert usage.touched == {"a.ts", "b.ts"}
    assert usage.total_bytes == 8
    assert "c.ts" not in workspace.files

    fresh = await executor.execute([_write("c.ts", "1")])
    assert fresh.all_succeeded


@pytest.mark.asyncio
async def test_dry_run_applies_nothing(workspace: MemoryWorkspace) -> None:
    envelope = SafetyEnvelope(allowed_actions=_ALL, dry_run=True)

    result = await AutonomousExecutor(workspace, envelope).execute(
        [_write("a.ts", "content\n"), ProposedAction(ActionKind.COMMIT, message="m")]
    )

    assert result.dry_run
    assert [r.status for r in result.results] == [ActionStatus.DRY_RUN, ActionStatus.DRY_RUN]
    assert result.all_succeeded
    assert "+content" in result.results[0].diff
    assert workspace.files == {}
    assert workspace.commits == []
    assert result.applied_paths == []


def test_envelope_from_config() -> None:
    config = ExecutorConfig(allowed_actions=["write_file", "commit", "bogus"], max_files=3)

    envelope = SafetyEnvelope.from_config(config, dry_run=True)

    assert envelope.allowed_actions == {ActionKind.WRITE_FILE, ActionKind.COMMIT}
    assert envelope.max_files == 3
    assert envelope.dry_run is True


# ── Failures ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failure_does_not_block_or_roll_back_others(workspace: MemoryWorkspace) -> None:
    workspace.fail_on = {"b.ts"}
    executor = AutonomousExecutor(workspace, SafetyEnvelope(allowed_actions=_ALL))

    result = await executor.execute(
        [
            _write("a.ts", "a"),
            _write("b.ts", "b"),
            _write("c.ts", "c"),
            ProposedAction(ActionKind.COMMIT, message="add tests"),
        ]
    )

    statuses = [r.status for r in result.results]
    assert statuses == [
        ActionStatus.APPLIED,
        ActionStatus.FAILED,
        ActionStatus.APPLIED,
        ActionStatus.SKIPPED,
    ]
    assert "disk full" in result.results[1].error
    assert "some file actions did not apply" in result.results[3].error
    assert workspace.files == {"a.ts": "a", "c.ts": "c"}
    assert workspace.commits == []

    with pytest.raises(ExecutionPartialFailure, match="2 action"):
        result.raise_for_failures()


@pytest.mark.asyncio
async def test_stale_patch_is_refused(workspace: MemoryWorkspace) -> None:
    workspace.files.update({"a.ts": "changed by someone\n"})
    patch = ProposedAction(
        ActionKind.APPLY_PATCH, path="a.ts", content="fixed\n", expected_original="original\n"
    )

    result = await AutonomousExecutor(workspace).execute([patch])

    assert result.results[0].status is ActionStatus.FAILED
    assert "changed since" in result.results[0].error
    assert workspace.files["a.ts"] == "changed by someone\n"


@pytest.mark.asyncio
async def test_commit_after_successful_writes(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace, SafetyEnvelope(allowed_actions=_ALL))

    result = await executor.execute(
        [
            ProposedAction(ActionKind.COMMIT, message="test: add e2e tests"),
            _write("a.ts"),
            _write("a.ts", "again"),
        ]
    )

    assert result.results[0].status is ActionStatus.APPLIED
    assert result.results[0].commit_sha == "abc1234"
    assert workspace.commits == [(["a.ts"], "test: add e2e tests")]


@pytest.mark.asyncio
async def test_cancelled_run_skips_everything(workspace: MemoryWorkspace) -> None:
    token = CancellationToken()
    token.cancel("closed")

    result = await AutonomousExecutor(workspace).execute([_write("a.ts")], cancel=token)

    assert result.results[0].status is ActionStatus.SKIPPED
    assert result.results[0].error == "run cancelled"
    assert workspace.writes == []


# ── Concurrency ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_same_path_writes_apply_in_proposal_order(workspace: MemoryWorkspace) -> None:

    result = await AutonomousExecutor(workspace).execute(
        [_write("a.ts", "slow first"), _write("b.ts", "other"), _write("a.ts", "second")]
    )

    assert result.all_succeeded
    a_writes = [content for path, content in workspace.writes if path == "a.ts"]
    assert a_writes == ["slow first", "second"]
    assert workspace.files["a.ts"] == "second"


@pytest.mark.asyncio
async def test_path_locks_are_released_after_use(workspace: MemoryWorkspace) -> None:
    executor = AutonomousExecutor(workspace)

    for batch in range(3):
        await executor.execute([_write(f"gen/{batch}-{i}.ts") for i in range(5)])

    assert executor._path_locks == {}
    assert executor._lock_users == {}


# ── File system workspace ────────────────────────────────────────


@pytest.mark.asyncio
async def test_filesystem_workspace_writes_nested_paths(tmp_path: Path) -> None:
    workspace = FileSystemWorkspace(tmp_path)

    result = await AutonomousExecutor(workspace).execute(
        [_write("tests/e2e/tests/login.spec.ts", "test content\n"), _write("../escape.ts")]
    )

    assert (tmp_path / "tests/e2e/tests/login.spec.ts").read_text() == "test content\n"
    assert result.results[1].status is ActionStatus.FAILED
    assert "escapes the workspace" in result.results[1].error
    assert not (tmp_path.parent / "escape.ts").exists()
