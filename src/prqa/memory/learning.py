"""Learning engine — statistics and prompt guidance derived from feedback.

Everything here is a pure fold over a feedback history.  Nothing is
persisted: insights are recomputed whenever they are read, so they can
never drift from the log they came from.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from prqa.llm.engine import LLMMessage
from prqa.memory.feedback import SuggestionCategory, Verdict, latest_by_subject

if TYPE_CHECKING:
    from prqa.config import FeedbackConfig
    from prqa.memory.feedback import FeedbackEntry, FeedbackStore

logger = logging.getLogger(__name__)

# Below this many resolved verdicts overall, no insight is drawn.
MIN_HISTORY = 10
CONSERVATIVE_REJECTION_RATE = 0.5
RIGOROUS_MODIFICATION_RATE = 0.4


# ── Data models ──────────────────────────────────────────────────


@dataclass(frozen=True)
class CategoryStats:
    """Verdict counts for one suggestion category."""

    category: str
    accepted: int = 0
    rejected: int = 0
    modified: int = 0
    pending: int = 0

    @property
    def resolved(self) -> int:
        return self.accepted + self.rejected + self.modified

    @property
    def acceptance_rate(self) -> float:
        """Share of resolved verdicts that accepted the suggestion as is."""
        return self.accepted / self.resolved if self.resolved else 0.0

    @property
    def rejection_rate(self) -> float:
        return self.rejected / self.resolved if self.resolved else 0.0

    @property
    def modification_rate(self) -> float:
        return self.modified / self.resolved if self.resolved else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "modified": self.modified,
            "pending": self.pending,
            "acceptance_rate": round(self.acceptance_rate, 4),
            "rejection_rate": round(self.rejection_rate, 4),
        }


@dataclass(frozen=True)
class FeedbackStats:
    """Aggregate over the latest verdict of every subject."""

    total: int = 0
    """Distinct subjects seen."""

    overall: CategoryStats = field(default_factory=lambda: CategoryStats(category="all"))
    by_category: dict[str, CategoryStats] = field(default_factory=dict)
    by_verdict: dict[str, int] = field(default_factory=dict)

    @property
    def resolved(self) -> int:
        return self.overall.resolved

    @property
    def acceptance_rate(self) -> float:
        return self.overall.acceptance_rate

    @property
    def helpful_percentage(self) -> float:
        """Accepted or modified suggestions as a share of resolved ones."""
        if not self.overall.resolved:
            return 0.0
        return (self.overall.accepted + self.overall.modified) * 100 / self.overall.resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "resolved": self.resolved,
            "acceptance_rate": round(self.acceptance_rate, 4),
            "helpful_percentage": round(self.helpful_percentage, 2),
            "by_verdict": dict(self.by_verdict),
            "by_category": {name: s.to_dict() for name, s in self.by_category.items()},
        }


@dataclass(frozen=True)
class LearningInsights:
    """Qualitative patterns drawn from the feedback history."""

    sample_size: int = 0
    be_more_conservative: bool = False
    """Too many suggestions were rejected overall."""

    be_more_rigorous: bool = False
    """Reviewers frequently had to extend the suggestions they kept."""

    frequent_false_positives: tuple[str, ...] = ()
    """Categories rejected above the rejection threshold."""

    reliable_categories: tuple[str, ...] = ()
    """Categories accepted above the acceptance threshold."""

    @property
    def has_signal(self) -> bool:
        return bool(
            self.be_more_conservative
            or self.be_more_rigorous
            or self.frequent_false_positives
            or self.reliable_categories
        )


# ── Public API ───────────────────────────────────────────────────


def analyze_feedback(history: list[FeedbackEntry]) -> FeedbackStats:
    """Aggregate *history*; the result does not depend on entry order."""
    latest = latest_by_subject(history)
    per_category: dict[str, Counter[str]] = {}
    overall: Counter[str] = Counter()
    for entry in latest.values():
        per_category.setdefault(entry.category.value, Counter())[entry.verdict.value] += 1
        overall[entry.verdict.value] += 1

    by_category = {
        name: _category_stats(name, per_category[name]) for name in sorted(per_category)
    }
    return FeedbackStats(
        total=len(latest),
        overall=_category_stats("all", overall),
        by_category=by_category,
        by_verdict={v.value: overall[v.value] for v in Verdict},
    )


def generate_learning_insights(
    history: list[FeedbackEntry],
    *,
    min_samples: int = 5,
    rejection_threshold: float = 0.6,
    acceptance_threshold: float = 0.8,
) -> LearningInsights:
    stats = analyze_feedback(history)
    if stats.resolved < MIN_HISTORY:
        logger.debug("Not enough feedback for insights (%d resolved)", stats.resolved)
        return LearningInsights(sample_size=stats.resolved)

    conservative = stats.overall.rejection_rate > CONSERVATIVE_REJECTION_RATE
    rigorous = not conservative and stats.overall.modification_rate > RIGOROUS_MODIFICATION_RATE

    eligible = [s for s in stats.by_category.values() if s.resolved >= min_samples]
    false_positives = tuple(s.category for s in eligible if s.rejection_rate > rejection_threshold)
    reliable = tuple(s.category for s in eligible if s.acceptance_rate >= acceptance_threshold)

    return LearningInsights(
        sample_size=stats.resolved,
        be_more_conservative=conservative,
        be_more_rigorous=rigorous,
        frequent_false_positives=false_positives,
        reliable_categories=reliable,
    )


_CATEGORY_WORDING = {
    SuggestionCategory.RISK.value: "risk assessments",
    SuggestionCategory.SCENARIO.value: "test scenarios",
    SuggestionCategory.GENERATED_TEST.value: "generated tests",
    SuggestionCategory.COVERAGE.value: "coverage suggestions",
    SuggestionCategory.DEPENDENCY.value: "dependency warnings",
    SuggestionCategory.CI_FIX.value: "CI fixes",
}


def get_prompt_enhancements(insights: LearningInsights) -> list[str]:
    """Render *insights* as guidance lines for the next prompts."""
    enhancements: list[str] = []

    if insights.be_more_conservative:
        enhancements.append(
            "Be more conservative in risk assessments: report only risks backed by "
            "concrete evidence in the diff."
        )
    if insights.be_more_rigorous:
        enhancements.append(
            "Be more rigorous: reviewers often had to extend previous suggestions, "
            "so cover edge cases and failure paths explicitly."
        )
    if insights.frequent_false_positives:
        enhancements.append(
            f"Avoid false positives in: {_describe(insights.frequent_false_positives)}."
        )
    if insights.reliable_categories:
        enhancements.append(
            f"Keep the current approach for: {_describe(insights.reliable_categories)}."
        )

    return enhancements


def inject_learning_into_messages(messages: list[LLMMessage], enhancements: list[str]) -> None:
    """Append learned guidance to an LLM message list in place."""
    if not enhancements:
        return
    lines = "\n".join(f"- {item}" for item in enhancements)
    messages.append(
        LLMMessage(
            role="user",
            content=f"**Adjustments learned from reviewer feedback:**\n{lines}",
        )
    )
    logger.debug("Injected %d learning enhancements into prompt", len(enhancements))


class LearningEngine:
    """Reads the feedback store and derives guidance for the current run."""

    def __init__(self, store: FeedbackStore, config: FeedbackConfig | None = None) -> None:
        self._store = store
        self._min_samples = config.min_samples if config else 5
        self._rejection_threshold = config.rejection_threshold if config else 0.6
        self._acceptance_threshold = config.acceptance_threshold if config else 0.8

    def stats(self) -> FeedbackStats:
        return analyze_feedback(self._store.read_all())

    def insights(self) -> LearningInsights:
        return generate_learning_insights(
            self._store.read_all(),
            min_samples=self._min_samples,
            rejection_threshold=self._rejection_threshold,
            acceptance_threshold=self._acceptance_threshold,
        )

    def prompt_enhancements(self) -> list[str]:
        enhancements = get_prompt_enhancements(self.insights())
        if enhancements:
            logger.info("Loaded %d learning enhancements", len(enhancements))
        return enhancements


# ── Helpers ──────────────────────────────────────────────────────


def _category_stats(name: str, counts: Counter[str]) -> CategoryStats:
    return CategoryStats(
        category=name,
        accepted=counts[Verdict.ACCEPTED.value],
        rejected=counts[Verdict.REJECTED.value],
        modified=counts[Verdict.MODIFIED.value],
        pending=counts[Verdict.PENDING.value],
    )


def _describe(categories: tuple[str, ...]) -> str:
    return ", ".join(_CATEGORY_WORDING.get(c, c) for c in categories)
