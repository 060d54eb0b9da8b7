"""Autonomous executor — the only component allowed to change the workspace.

Proposed actions (write a file, apply a patch, commit) are checked against a
safety envelope before anything happens:

- the action kind must be on the allow-list (``commit`` is off by default);
- the run may touch at most ``max_files`` distinct files and ``max_bytes``
  bytes, counted in action order across every batch that shares one
  :class:`EnvelopeUsage`;
- in dry-run mode every admitted action is reported but none is applied.

File actions run concurrently, but writes to the same path are serialized
in the order they were proposed.  A failed action never blocks independent
ones, and nothing already applied is rolled back.  Commits run last, and
only when every file action of the batch succeeded.
"""

from __future__ import annotations

import asyncio
import contextlib
import difflib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from prqa.utils import git

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from prqa.config import ExecutorConfig
    from prqa.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class ActionKind(Enum):
    WRITE_FILE = "write_file"
    APPLY_PATCH = "apply_patch"
    COMMIT = "commit"


class ActionStatus(Enum):
    APPLIED = "applied"
    DRY_RUN = "dry_run"
    """Admitted by the envelope but not applied."""

    SKIPPED = "skipped"
    """Refused by the envelope, cancelled, or blocked by an earlier failure."""

    FAILED = "failed"


_FILE_KINDS = frozenset({ActionKind.WRITE_FILE, ActionKind.APPLY_PATCH})


# ── Data models ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ProposedAction:
    """A side effect some stage wants performed."""

    kind: ActionKind
    path: str = ""
    """Target path relative to the workspace root (file actions only)."""

    content: str = ""
    """Full new content of the file (file actions only)."""

    expected_original: str | None = None
    """For ``apply_patch``: the content the file must still have on disk."""

    message: str = ""
    """Commit message (``commit`` only)."""

    stage: str = ""
    """Pipeline stage that proposed the action."""

    subject: str = ""
    """Identifier of the artifact behind the action (e.g. a candidate id)."""

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass
class ActionResult:
    action: ProposedAction
    status: ActionStatus
    error: str = ""
    diff: str = ""
    """Unified diff of the change (also computed in dry-run mode)."""

    commit_sha: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ActionStatus.APPLIED, ActionStatus.DRY_RUN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.action.kind.value,
            "path": self.action.path,
            "stage": self.action.stage,
            "subject": self.action.subject,
            "status": self.status.value,
            "error": self.error,
            "commit_sha": self.commit_sha,
        }


class ExecutionPartialFailure(Exception):
    """Some actions of a batch failed or were refused."""

    def __init__(self, failed: list[ActionResult]) -> None:
        self.failed = failed
        detail = "; ".join(f"{r.action.kind.value} {r.action.path}: {r.error}" for r in failed)
        super().__init__(f"{len(failed)} action(s) did not apply: {detail}")


@dataclass
class AutonomousExecutionResult:
    """Per-action outcome of one batch, in proposal order."""

    results: list[ActionResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> list[ActionResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[ActionResult]:
        return [r for r in self.results if not r.ok]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def applied_paths(self) -> list[str]:
        return [
            r.action.path
            for r in self.results
            if r.status is ActionStatus.APPLIED and r.action.kind in _FILE_KINDS
        ]

    def raise_for_failures(self) -> None:
        """Raise :class:`ExecutionPartialFailure` when any action did not apply."""
        if self.failed:
            raise ExecutionPartialFailure(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "actions": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class SafetyEnvelope:
    """Fixed limits for one run of the executor."""

    allowed_actions: frozenset[ActionKind] = frozenset(_FILE_KINDS)
    max_files: int = 20
    max_bytes: int = 512_000
    dry_run: bool = False

    @classmethod
    def from_config(cls, config: ExecutorConfig, *, dry_run: bool | None = None) -> SafetyEnvelope:
        allowed = {k for k in ActionKind if k.value in config.allowed_actions}
        return cls(
            allowed_actions=frozenset(allowed),
            max_files=config.max_files,
            max_bytes=config.max_bytes,
            dry_run=config.dry_run if dry_run is None else dry_run,
        )


@dataclass
class EnvelopeUsage:
    """What a run has consumed of its envelope so far."""

    touched: set[str] = field(default_factory=set)
    total_bytes: int = 0


# ── Workspace ────────────────────────────────────────────────────


class Workspace(Protocol):
    """Filesystem/VCS collaborator the executor acts on."""

    def read(self, path: str) -> str | None:
        """Return the file content, or ``None`` if it does not exist."""
        ...

    def write(self, path: str, content: str) -> None: ...

    def commit(self, paths: list[str], message: str) -> str:
        """Commit *paths* and return the commit identifier."""
        ...


class FileSystemWorkspace:
    """Workspace rooted at a directory; commits go through ``git``."""

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str) -> Path:
        """Return the absolute path for *path*, refusing paths outside the root."""
        target = (self._root / path).resolve()
        if not target.is_relative_to(self._root):
            raise ValueError(f"Path escapes the workspace: {path}")
        return target

    def read(self, path: str) -> str | None:
        target = self.resolve(path)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def commit(self, paths: list[str], message: str) -> str:
        git.add_files(self._root, paths)
        return git.commit(self._root, message)


# ── Executor ─────────────────────────────────────────────────────


class AutonomousExecutor:
    """Applies proposed actions within a :class:`SafetyEnvelope`."""

    def __init__(self, workspace: Workspace, envelope: SafetyEnvelope | None = None) -> None:
        self._workspace = workspace
        self._envelope = envelope or SafetyEnvelope()
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def envelope(self) -> SafetyEnvelope:
        return self._envelope

    async def execute(
        self,
        actions: list[ProposedAction],
        *,
        usage: EnvelopeUsage | None = None,
        cancel: CancellationToken | None = None,
    ) -> AutonomousExecutionResult:
        """Run *actions*; the result lists one entry per action, in order.

        Pass the same *usage* to every batch of a run so the file and byte
        ceilings cover the whole run; without one the batch is its own run.
        """
        envelope = self._envelope
        results: list[ActionResult | None] = [None] * len(actions)
        admitted = self._admit(actions, results, usage or EnvelopeUsage())

        file_jobs = [
            self._run_file_action(index, actions[index], cancel)
            for index in admitted
            if actions[index].kind in _FILE_KINDS
        ]
        for index, result in await asyncio.gather(*file_jobs):
            results[index] = result

        file_results = [
            r for r, a in zip(results, actions, strict=True) if a.kind in _FILE_KINDS
        ]
        files_ok = all(r is not None and r.ok for r in file_results)
        written = list(
            dict.fromkeys(
                r.action.path
                for r in file_results
                if r is not None and r.status is ActionStatus.APPLIED
            )
        )
        for index in admitted:
            action = actions[index]
            if action.kind is ActionKind.COMMIT:
                results[index] = await self._run_commit(action, written, files_ok, cancel)

        final = [r for r in results if r is not None]
        summary = AutonomousExecutionResult(results=final, dry_run=envelope.dry_run)
        logger.info(
            "Executed %d action(s)%s: %d ok, %d not applied",
            len(final),
            " (dry run)" if envelope.dry_run else "",
            len(summary.succeeded),
            len(summary.failed),
        )
        return summary

    # ── Internal helpers ──────────────────────────────────────────

    def _admit(
        self,
        actions: list[ProposedAction],
        results: list[ActionResult | None],
        usage: EnvelopeUsage,
    ) -> list[int]:
        """Apply the envelope in proposal order; refused actions get a result now."""
        envelope = self._envelope
        admitted: list[int] = []
        touched = usage.touched

        for index, action in enumerate(actions):
            reason = ""
            if action.kind not in envelope.allowed_actions:
                reason = f"action kind '{action.kind.value}' is not allowed"
            elif action.kind in _FILE_KINDS:
                if not action.path:
                    reason = "file action without a path"
                elif action.path not in touched and len(touched) >= envelope.max_files:
                    reason = f"file ceiling of {envelope.max_files} reached"
                elif usage.total_bytes + action.size > envelope.max_bytes:
                    reason = f"byte ceiling of {envelope.max_bytes} reached"

            if reason:
                logger.warning("Skipping %s %s: %s", action.kind.value, action.path, reason)
                results[index] = ActionResult(
                    action=action, status=ActionStatus.SKIPPED, error=reason
                )
                continue

            if action.kind in _FILE_KINDS:
                touched.add(action.path)
                usage.total_bytes += action.size
            admitted.append(index)
        return admitted

    @contextlib.asynccontextmanager
    async def _holding(self, path: str) -> AsyncIterator[None]:
        """Serialize work on *path*; the lock is dropped once nobody waits on it."""
        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        self._lock_users[path] = self._lock_users.get(path, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[path] -= 1
            if not self._lock_users[path]:
                del self._lock_users[path]
                del self._path_locks[path]

    async def _run_file_action(
        self, index: int, action: ProposedAction, cancel: CancellationToken | None
    ) -> tuple[int, ActionResult]:
        async with self._holding(action.path):
            if cancel is not None and cancel.cancelled:
                return index, ActionResult(
                    action=action, status=ActionStatus.SKIPPED, error="run cancelled"
                )
            try:
                current = await asyncio.to_thread(self._workspace.read, action.path)
                if (
                    action.kind is ActionKind.APPLY_PATCH
                    and action.expected_original is not None
                    and current != action.expected_original
                ):
                    return index, ActionResult(
                        action=action,
                        status=ActionStatus.FAILED,
                        error="file content changed since the patch was proposed",
                    )
                diff = _unified_diff(action.path, current or "", action.content)
                if self._envelope.dry_run:
                    logger.info("Dry run: would %s %s", action.kind.value, action.path)
                    return index, ActionResult(
                        action=action, status=ActionStatus.DRY_RUN, diff=diff
                    )

                await asyncio.to_thread(self._workspace.write, action.path, action.content)
            except (OSError, ValueError) as exc:
                logger.error("Failed to %s %s: %s", action.kind.value, action.path, exc)
                return index, ActionResult(
                    action=action, status=ActionStatus.FAILED, error=str(exc)
                )

            logger.info("Applied %s %s (%d bytes)", action.kind.value, action.path, action.size)
            return index, ActionResult(action=action, status=ActionStatus.APPLIED, diff=diff)

    async def _run_commit(
        self,
        action: ProposedAction,
        written: list[str],
        files_ok: bool,
        cancel: CancellationToken | None,
    ) -> ActionResult:
        if cancel is not None and cancel.cancelled:
            return ActionResult(action=action, status=ActionStatus.SKIPPED, error="run cancelled")
        if not files_ok:
            return ActionResult(
                action=action,
                status=ActionStatus.SKIPPED,
                error="not committing: some file actions did not apply",
            )
        if self._envelope.dry_run:
            return ActionResult(action=action, status=ActionStatus.DRY_RUN)
        if not written:
            return ActionResult(
                action=action, status=ActionStatus.SKIPPED, error="nothing to commit"
            )
        try:
            sha = await asyncio.to_thread(
                self._workspace.commit, written, action.message or "Add generated tests"
            )
        except (OSError, git.GitOperationError) as exc:
            logger.error("Commit failed: %s", exc)
            return ActionResult(action=action, status=ActionStatus.FAILED, error=str(exc))
        return ActionResult(action=action, status=ActionStatus.APPLIED, commit_sha=sha)


def _unified_diff(path: str, before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )
