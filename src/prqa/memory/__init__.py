"""Feedback persistence and learning for prqa."""

from prqa.memory.feedback import (
    FeedbackCollector,
    FeedbackEntry,
    FeedbackStore,
    SuggestionCategory,
    Verdict,
)
from prqa.memory.learning import (
    FeedbackStats,
    LearningEngine,
    LearningInsights,
    analyze_feedback,
    generate_learning_insights,
    get_prompt_enhancements,
    inject_learning_into_messages,
)

__all__ = [
    "FeedbackCollector",
    "FeedbackEntry",
    "FeedbackStats",
    "FeedbackStore",
    "LearningEngine",
    "LearningInsights",
    "SuggestionCategory",
    "Verdict",
    "analyze_feedback",
    "generate_learning_insights",
    "get_prompt_enhancements",
    "inject_learning_into_messages",
]
