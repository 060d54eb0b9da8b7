"""Tests for the append-only feedback store and collector."""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING

import pytest

from prqa.memory.feedback import (
    FeedbackCollector,
    FeedbackEntry,
    FeedbackStore,
    SuggestionCategory,
    Verdict,
    latest_by_subject,
)

if TYPE_CHECKING:
    from pathlib import Path


def _entry(subject: str, verdict: Verdict, timestamp: str, entry_id: str = "") -> FeedbackEntry:
    return FeedbackEntry(
        subject=subject,
        category=SuggestionCategory.SCENARIO,
        verdict=verdict,
        timestamp=timestamp,
        entry_id=entry_id or f"{subject}-{timestamp}",
    )


@pytest.fixture
def store(tmp_path: Path) -> FeedbackStore:
    return FeedbackStore.for_project(tmp_path)


# ── Store ────────────────────────────────────────────────────────


def test_store_location(tmp_path: Path, store: FeedbackStore) -> None:
    assert store.path == (tmp_path / ".prqa" / "feedback.jsonl").resolve()
    assert store.read_all() == []


def test_append_writes_one_line_per_entry(store: FeedbackStore) -> None:
    store.append(_entry("acme/shop#42:scenario:TC001", Verdict.ACCEPTED, "2026-01-02T00:00:00"))
    store.append(_entry("acme/shop#42:scenario:TC002", Verdict.REJECTED, "2026-01-01T00:00:00"))

    lines = store.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["verdict"] == "accepted"
    # Reads come back ordered by time, not by append order.
    assert [e.verdict for e in store.read_all()] == [Verdict.REJECTED, Verdict.ACCEPTED]


def test_entries_are_never_rewritten(store: FeedbackStore) -> None:
    subject = "acme/shop#42:risk:auth"
    store.append(_entry(subject, Verdict.PENDING, "2026-01-01T00:00:00"))
    before = store.path.read_text(encoding="utf-8")

    store.append(_entry(subject, Verdict.ACCEPTED, "2026-01-02T00:00:00"))

    assert store.path.read_text(encoding="utf-8").startswith(before)
    assert len(store.read_all()) == 2


def test_corrupt_lines_are_skipped(store: FeedbackStore, caplog: pytest.LogCaptureFixture) -> None:
    store.append(_entry("a", Verdict.ACCEPTED, "2026-01-01T00:00:00"))
    with store.path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")
        f.write('["a list"]\n')
        f.write('{"subject": "b", "category": "nonsense", "verdict": "accepted", '
                '"timestamp": "2026-01-01"}\n')
        f.write("\n")

    entries = store.read_all()

    assert [e.subject for e in entries] == ["a"]
    assert caplog.text.count("Skipping corrupt feedback line") == 3


def test_concurrent_appends_never_interleave(tmp_path: Path) -> None:
    path = tmp_path / "feedback.jsonl"
    comment = "x" * 4096

    def worker(n: int) -> None:
        # Separate instances share the per-file lock.
        store = FeedbackStore(path)
        for i in range(25):
            store.append(
                FeedbackEntry(
                    subject=f"s{n}-{i}",
                    category=SuggestionCategory.GENERATED_TEST,
                    verdict=Verdict.ACCEPTED,
                    comment=comment,
                )
            )

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 200
    assert all(json.loads(line)["comment"] == comment for line in lines)
    assert len(FeedbackStore(path).read_all()) == 200


def test_entry_round_trip_keeps_identity() -> None:
    entry = FeedbackEntry(
        subject="acme/shop#42:ci_fix:e2e",
        category=SuggestionCategory.CI_FIX,
        verdict=Verdict.MODIFIED,
        comment="changed the selector",
        repo="acme/shop",
        pr_number=42,
        run_id="run-1",
    )
    assert FeedbackEntry.from_dict(entry.to_dict()) == entry


# ── Latest verdict ───────────────────────────────────────────────


def test_latest_by_subject_is_order_independent() -> None:
    history = [
        _entry("a", Verdict.PENDING, "2026-01-01T00:00:00"),
        _entry("a", Verdict.REJECTED, "2026-01-03T00:00:00"),
        _entry("a", Verdict.ACCEPTED, "2026-01-02T00:00:00"),
        _entry("b", Verdict.ACCEPTED, "2026-01-01T00:00:00", entry_id="1"),
        _entry("b", Verdict.MODIFIED, "2026-01-01T00:00:00", entry_id="2"),
    ]

    forward = latest_by_subject(history)
    backward = latest_by_subject(list(reversed(history)))

    assert forward == backward
    assert forward["a"].verdict is Verdict.REJECTED
    assert forward["b"].verdict is Verdict.MODIFIED


# ── Collector ────────────────────────────────────────────────────


def test_collector_records_and_lists_pending(store: FeedbackStore) -> None:
    collector = FeedbackCollector(store)
    collector.collect_feedback(_entry("s1", Verdict.PENDING, "2026-01-01T00:00:00"))
    collector.collect_feedback(_entry("s2", Verdict.PENDING, "2026-01-01T00:00:01"))
    collector.collect_feedback(_entry("s1", Verdict.ACCEPTED, "2026-01-02T00:00:00"))
    collector.record("s3", SuggestionCategory.RISK, Verdict.ACCEPTED, repo="acme/shop")

    pending = collector.collect_pending_feedback()

    assert [e.subject for e in pending] == ["s2"]
    assert len(collector.history()) == 4
    assert collector.store is store


def test_collector_rejects_blank_subject(store: FeedbackStore) -> None:
    with pytest.raises(ValueError, match="subject"):
        FeedbackCollector(store).record("  ", SuggestionCategory.RISK, Verdict.ACCEPTED)
    assert store.read_all() == []
