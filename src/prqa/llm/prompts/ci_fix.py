"""Prompt templates for CI failure classification and fix generation."""

from __future__ import annotations

from dataclasses import dataclass, field

from prqa.llm.prompts.base import PromptSection, PromptTemplate


@dataclass
class CIFixContext:
    """Context for classifying and fixing one CI failure."""

    job: str
    """CI job or check name."""

    log_excerpt: str
    """Failure log, already truncated."""

    error_message: str = ""
    failed_tests: list[str] = field(default_factory=list)
    classification: str = ""
    """Pre-classification from log patterns, empty when unknown."""

    test_files: dict[str, str] = field(default_factory=dict)
    """Path to content of the test files involved."""

    previous_attempts: list[str] = field(default_factory=list)
    """Summaries of fixes already tried for this failure."""


_CLASSIFY_SYSTEM = """You are triaging a failing CI job.

Classify the failure and answer with a single JSON object:
{"classification": "<class>", "reasoning": "<one sentence>"}

where <class> is one of flaky_test, syntax_error, assertion,
selector_or_timing, dependency_mismatch, environment, unknown."""


_FIX_SYSTEM = """You are an expert test engineer fixing failing automated tests.

Analyze the CI failure and the test files, then answer with a single JSON object:
{
  "can_fix": true or false,
  "analysis": "<brief explanation of what is wrong>",
  "fixed_file": {"path": "<path>", "content": "<complete fixed file>",
                 "changes": ["<change>"]}
}

Common causes: incorrect selectors, timing issues, mock setup, wrong expected
values, import errors and syntax errors. If the failure needs a human decision
or is an infrastructure problem, set can_fix to false and omit fixed_file."""


class CIClassificationPrompt(PromptTemplate[CIFixContext]):
    @property
    def name(self) -> str:
        return "ci_classification"

    def _system_instruction(self, context: CIFixContext) -> str:
        return _CLASSIFY_SYSTEM

    def _build_sections(self, context: CIFixContext) -> list[PromptSection]:
        return [
            PromptSection(label="Job", content=context.job),
            PromptSection(label="Error", content=context.error_message),
            PromptSection(label="Log Excerpt", content=f"```\n{context.log_excerpt}\n```"),
        ]


class CIFixPrompt(PromptTemplate[CIFixContext]):
    """Asks for a complete replacement of the failing test file."""

    @property
    def name(self) -> str:
        return "ci_fix"

    def _system_instruction(self, context: CIFixContext) -> str:
        return _FIX_SYSTEM

    def _build_sections(self, context: CIFixContext) -> list[PromptSection]:
        failure = [
            f"Job: {context.job}",
            f"Classification: {context.classification or 'unknown'}",
            f"Error: {context.error_message or 'Unknown error'}",
            f"Failed tests: {', '.join(context.failed_tests) or 'Unknown'}",
        ]
        sections = [
            PromptSection(label="CI Failure", content="\n".join(failure)),
            PromptSection(label="Log Excerpt", content=f"```\n{context.log_excerpt}\n```"),
        ]
        for path, content in sorted(context.test_files.items()):
            sections.append(
                PromptSection(label=f"Test File ({path})", content=f"```\n{content}\n```")
            )
        if context.previous_attempts:
            sections.append(
                PromptSection(
                    label="Already Tried (did not fix CI)",
                    content="\n".join(f"- {a}" for a in context.previous_attempts),
                )
            )
        return sections
