"""Helpers for unified diffs."""

from __future__ import annotations

import re

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_PLUS_HEADER_RE = re.compile(r"^\+\+\+ b/(.+)$")
_HUNK_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")

TRUNCATION_MARKER = "\n\n... [diff truncated due to size]"


def extract_changed_files(diff: str) -> list[str]:
    """Return the files touched by *diff*, in order of first appearance.

    Reads ``diff --git`` headers and falls back to ``+++ b/`` lines for
    diffs produced without git.
    """
    files: list[str] = []
    seen: set[str] = set()
    for line in diff.splitlines():
        match = _DIFF_HEADER_RE.match(line) or _PLUS_HEADER_RE.match(line)
        if not match:
            continue
        path = match.group(match.lastindex or 1).strip()
        if path and path != "/dev/null" and path not in seen:
            seen.add(path)
            files.append(path)
    return files


def truncate_diff(diff: str, max_chars: int) -> tuple[str, bool]:
    """Cut *diff* to *max_chars* characters, appending a marker when cut."""
    if len(diff) <= max_chars:
        return diff, False
    return diff[:max_chars] + TRUNCATION_MARKER, True


def split_file_diffs(diff: str) -> dict[str, str]:
    """Split a multi-file diff into per-file chunks keyed by path."""
    chunks: dict[str, list[str]] = {}
    current: list[str] | None = None
    for line in diff.splitlines():
        match = _DIFF_HEADER_RE.match(line)
        if match:
            current = chunks.setdefault(match.group(2).strip(), [])
        if current is not None:
            current.append(line)
    return {path: "\n".join(lines) for path, lines in chunks.items()}


def added_lines(file_diff: str) -> list[tuple[int, str]]:
    """Return ``(new_line_number, text)`` for every added line in a file diff."""
    result: list[tuple[int, str]] = []
    line_no = 0
    for line in file_diff.splitlines():
        hunk = _HUNK_RE.match(line)
        if hunk:
            line_no = int(hunk.group(1))
            continue
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            result.append((line_no, line[1:]))
            line_no += 1
        elif line.startswith(" "):
            line_no += 1
    return result
