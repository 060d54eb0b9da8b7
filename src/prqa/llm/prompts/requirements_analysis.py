"""Prompt template for pre-implementation requirements analysis."""

from __future__ import annotations

from dataclasses import dataclass, field

from prqa.llm.prompts.base import PromptSection, PromptTemplate, format_diff_section


@dataclass
class RequirementsContext:
    """Context for the requirements analysis prompt."""

    requirements: str = ""
    """User stories or acceptance criteria as plain text."""

    document_text: str = ""
    """Text extracted from an attached document."""

    document_name: str = ""

    diff: str = ""
    """Diff to ground scenarios in when no written requirements exist."""

    pr_description: str = ""

    metadata: dict[str, str] = field(default_factory=dict)
    """Optional project, feature, sprint and priority labels."""


_SYSTEM = """You are a QA analyst reviewing requirements before and during implementation.

Answer with a single JSON object using these keys:

- "summary": {"title", "description", "scope": [..], "complexity"} where
  complexity is low, medium or high
- "scenarios": [{"id", "title", "category", "priority", "preconditions": [..],
  "steps": [..], "expectedResult", "suggestedTestType", "testData": [..],
  "dependencies": [..], "effort", "heuristic"}] where suggestedTestType is
  unit, integration, e2e or manual and effort is low, medium or high
- "acceptanceCriteria": [{"id", "description", "type", "automatable",
  "gherkin": {"given", "when", "then"}}] where type is functional,
  non-functional, ux or accessibility
- "risks": [{"title", "description", "severity", "mitigation", "affectedAreas": [..]}]
- "gaps": [{"title", "description", "type", "question", "severity",
  "recommendation"}] where type is missing_info, ambiguity, contradiction,
  edge_case, dangerous_assumption, implicit_criterion or unclear_behavior
  and question is what to ask the product owner
- "suggestions": [..]

Look for what the requirements leave unsaid: implicit criteria, unhandled
edge cases and contradictions."""


class RequirementsAnalysisPrompt(PromptTemplate[RequirementsContext]):
    """Turns requirements text (or a diff when none exist) into scenarios and gaps."""

    @property
    def name(self) -> str:
        return "requirements_analysis"

    def _system_instruction(self, context: RequirementsContext) -> str:
        return _SYSTEM

    def _build_sections(self, context: RequirementsContext) -> list[PromptSection]:
        sections: list[PromptSection] = []
        if context.metadata:
            meta = "\n".join(f"{key}: {value}" for key, value in sorted(context.metadata.items()))
            sections.append(PromptSection(label="Metadata", content=meta))
        sections.append(PromptSection(label="Requirements", content=context.requirements))
        if context.document_text:
            label = f"Document ({context.document_name})" if context.document_name else "Document"
            sections.append(PromptSection(label=label, content=context.document_text))
        if not context.requirements and not context.document_text:
            sections.append(
                PromptSection(
                    label="Note",
                    content=(
                        "No written requirements were supplied. Infer the intended "
                        "behaviour from the pull request description and diff."
                    ),
                )
            )
        sections.append(
            PromptSection(label="Pull Request Description", content=context.pr_description)
        )
        sections.append(format_diff_section(context.diff))
        return sections
