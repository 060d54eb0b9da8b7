"""Feedback store — append-only JSON Lines log of human verdicts.

Every suggestion the pipeline surfaces (a risk, a scenario, a generated test,
a coverage hint, a dependency warning, a CI fix) can receive a verdict from
a reviewer.  The log lives at ``.prqa/feedback.jsonl`` and is the only state
that outlives a run:

- Writes are appends of a single line, issued with one ``write`` call under a
  per-file lock, so concurrent runs never interleave partial entries.
- Entries are never rewritten.  A later verdict on the same subject is a new
  entry; readers take the latest one.
- Corrupt lines are skipped with a warning instead of failing the read.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = ".prqa/feedback.jsonl"


class Verdict(Enum):
    """Human verdict on one suggestion."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"
    PENDING = "pending"
    """Surfaced to a reviewer, verdict not yet known."""


class SuggestionCategory(Enum):
    RISK = "risk"
    SCENARIO = "scenario"
    GENERATED_TEST = "generated_test"
    COVERAGE = "coverage"
    DEPENDENCY = "dependency"
    CI_FIX = "ci_fix"


@dataclass(frozen=True)
class FeedbackEntry:
    """One verdict on one suggestion."""

    subject: str
    """Identity of the suggestion (e.g. ``acme/shop#42:scenario:TC003``)."""

    category: SuggestionCategory
    verdict: Verdict
    comment: str = ""
    repo: str = ""
    pr_number: int = 0
    run_id: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    """Tie-breaker for entries sharing a timestamp."""

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.timestamp, self.entry_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp,
            "subject": self.subject,
            "category": self.category.value,
            "verdict": self.verdict.value,
            "comment": self.comment,
            "repo": self.repo,
            "pr_number": self.pr_number,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackEntry:
        """Build an entry from its JSON form.

        Raises:
            KeyError: If a mandatory field is absent.
            ValueError: If the category or verdict is unknown.
        """
        return cls(
            subject=str(data["subject"]),
            category=SuggestionCategory(data["category"]),
            verdict=Verdict(data["verdict"]),
            comment=str(data.get("comment", "")),
            repo=str(data.get("repo", "")),
            pr_number=int(data.get("pr_number", 0)),
            run_id=str(data.get("run_id", "")),
            timestamp=str(data["timestamp"]),
            entry_id=str(data.get("entry_id") or uuid.uuid4().hex),
        )


# One lock per resolved file, shared by every store instance in the process.
_FILE_LOCKS: dict[Path, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(path, threading.Lock())


class FeedbackStore:
    """Append-only JSON Lines storage for :class:`FeedbackEntry`."""

    def __init__(self, path: Path) -> None:
        self._path = path.resolve()
        self._lock = _lock_for(self._path)

    @classmethod
    def for_project(cls, project_root: Path, store_path: str = DEFAULT_STORE_PATH) -> FeedbackStore:
        return cls(project_root / store_path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: FeedbackEntry) -> None:
        """Append *entry* as one line."""
        line = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
        logger.debug("Recorded %s feedback for %s", entry.verdict.value, entry.subject)

    def read_all(self) -> list[FeedbackEntry]:
        """Return every readable entry, ordered by time."""
        if not self._path.exists():
            return []

        entries: list[FeedbackEntry] = []
        with self._lock:
            text = self._path.read_text(encoding="utf-8")
        for number, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise TypeError("entry is not an object")
                entries.append(FeedbackEntry.from_dict(data))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping corrupt feedback line %d in %s: %s", number, self._path, exc
                )
        entries.sort(key=lambda e: e.sort_key)
        return entries


def latest_by_subject(history: list[FeedbackEntry]) -> dict[str, FeedbackEntry]:
    """Return the latest entry per subject, independent of input order."""
    latest: dict[str, FeedbackEntry] = {}
    for entry in history:
        current = latest.get(entry.subject)
        if current is None or entry.sort_key > current.sort_key:
            latest[entry.subject] = entry
    return latest


class FeedbackCollector:
    """Records verdicts and finds suggestions still awaiting one."""

    def __init__(self, store: FeedbackStore) -> None:
        self._store = store

    @property
    def store(self) -> FeedbackStore:
        return self._store

    def collect_feedback(self, entry: FeedbackEntry) -> FeedbackEntry:
        """Append one entry to the log.

        Raises:
            ValueError: If the entry has no subject.
        """
        if not entry.subject.strip():
            raise ValueError("Feedback entry needs a subject")
        self._store.append(entry)
        logger.info(
            "Feedback collected: %s -> %s (%s)",
            entry.subject,
            entry.verdict.value,
            entry.category.value,
        )
        return entry

    def record(
        self,
        subject: str,
        category: SuggestionCategory,
        verdict: Verdict,
        *,
        comment: str = "",
        repo: str = "",
        pr_number: int = 0,
        run_id: str = "",
    ) -> FeedbackEntry:
        return self.collect_feedback(
            FeedbackEntry(
                subject=subject,
                category=category,
                verdict=verdict,
                comment=comment,
                repo=repo,
                pr_number=pr_number,
                run_id=run_id,
            )
        )

    def collect_pending_feedback(self) -> list[FeedbackEntry]:
        """Return subjects whose latest entry is still :attr:`Verdict.PENDING`."""
        latest = latest_by_subject(self._store.read_all())
        pending = [e for e in latest.values() if e.verdict is Verdict.PENDING]
        return sorted(pending, key=lambda e: e.sort_key)

    def history(self) -> list[FeedbackEntry]:
        return self._store.read_all()
