"""Base prompt template system shared by every gateway-calling stage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from prqa.llm.engine import LLMMessage

ContextT = TypeVar("ContextT")


@dataclass
class PromptSection:
    """A labelled block of content within a rendered prompt."""

    label: str
    content: str


@dataclass
class RenderedPrompt:
    """The final output of a prompt template — a list of LLM messages."""

    messages: list[LLMMessage] = field(default_factory=list)

    @property
    def system_message(self) -> str:
        """Return the first system message content, or empty string."""
        for msg in self.messages:
            if msg.role == "system":
                return msg.content
        return ""

    @property
    def user_message(self) -> str:
        """Return the first user message content, or empty string."""
        for msg in self.messages:
            if msg.role == "user":
                return msg.content
        return ""


class PromptTemplate(ABC, Generic[ContextT]):
    """Abstract base class for prompt templates.

    Subclasses implement ``_system_instruction`` and ``_build_sections``
    to define the prompt structure.  The base class handles rendering into
    ``RenderedPrompt`` and appending learned guidance.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Template identifier, also used as the prompt's cache namespace."""

    @abstractmethod
    def _system_instruction(self, context: ContextT) -> str:
        """Return the system-level instruction text."""

    @abstractmethod
    def _build_sections(self, context: ContextT) -> list[PromptSection]:
        """Return ordered sections that form the user message body."""

    def render(self, context: ContextT, *, guidance: list[str] | None = None) -> RenderedPrompt:
        """Render the template into a list of LLM messages.

        Args:
            context: Template-specific context.
            guidance: Learned prompt enhancements, appended to the system
                message as a bullet list.
        """
        system = self._system_instruction(context)
        if guidance:
            system += format_guidance(guidance)
        sections = self._build_sections(context)

        return RenderedPrompt(
            messages=[
                LLMMessage(role="system", content=system),
                LLMMessage(role="user", content=_join_sections(sections)),
            ]
        )


# ── Helpers ───────────────────────────────────────────────────────


def format_guidance(guidance: list[str]) -> str:
    """Render learned guidance as a system-prompt appendix."""
    lines = "\n".join(f"- {item}" for item in guidance)
    return (
        "\n\n## Adjustments From Previous Feedback\n\n"
        f"{lines}\n\n"
        "Take these adjustments into account."
    )


def format_diff_section(diff: str, *, label: str = "Diff") -> PromptSection:
    return PromptSection(label=label, content=f"```diff\n{diff}\n```" if diff else "")


def _join_sections(sections: list[PromptSection]) -> str:
    """Join prompt sections into a single user-message string."""
    blocks = [f"## {s.label}\n\n{s.content}" for s in sections if s.content]
    return "\n\n---\n\n".join(blocks)
