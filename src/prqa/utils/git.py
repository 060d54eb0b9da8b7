"""Git helpers used by the filesystem workspace."""

from __future__ import annotations

import logging
import shutil
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class GitOperationError(Exception):
    """Exception raised when git operations fail."""


def _git_executable() -> str:
    """Resolve the full path to the ``git`` executable."""
    return shutil.which("git") or "git"


def add_files(repo_path: Path, files: list[str]) -> None:
    """Stage *files* (relative to *repo_path*).

    Raises:
        GitOperationError: If the operation fails.
    """
    try:
        subprocess.run(
            [_git_executable(), "add", "--", *files],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True,
        )
        logger.info("Added %d files to staging", len(files))
    except (OSError, subprocess.CalledProcessError) as exc:
        raise GitOperationError(f"Failed to add files: {exc}") from exc


def commit(repo_path: Path, message: str) -> str:
    """Commit staged changes and return the new commit SHA.

    Raises:
        GitOperationError: If the operation fails.
    """
    try:
        subprocess.run(
            [_git_executable(), "commit", "-m", message],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True,
        )
        result = subprocess.run(
            [_git_executable(), "rev-parse", "HEAD"],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise GitOperationError(f"Failed to commit: {exc}") from exc
    sha = result.stdout.strip()
    logger.info("Created commit %s", sha[:8])
    return sha
