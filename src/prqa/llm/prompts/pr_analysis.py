"""Prompt template for the pull request risk and quality analysis."""

from __future__ import annotations

from dataclasses import dataclass

from prqa.llm.prompts.base import PromptSection, PromptTemplate, format_diff_section


@dataclass
class PRAnalysisContext:
    """Context for the pull request analysis prompt."""

    title: str
    """Pull request title."""

    description: str
    """Pull request body, or a placeholder when empty."""

    diff: str
    """Diff, already truncated to the configured size."""

    changed_files: list[str]
    """Files touched by the diff."""

    truncated: bool = False
    """True when the diff was cut."""


_SYSTEM = """You are a senior QA engineer reviewing a pull request before merge.

Analyze the change and answer with a single JSON object using these keys:

- "summary": {"title", "description", "impactAreas": [..], "changeType"} where
  changeType is one of feature, bugfix, refactor, config, docs, mixed
- "overallRisk": one of critical, high, medium, low
- "risks": [{"level", "area", "title", "description", "probability", "impact",
  "mitigation": {"preventive", "detective", "corrective"}, "testsRequired": [..]}]
- "scenarios": [{"id", "title", "category", "priority", "preconditions": [..],
  "steps": [..], "expectedResult", "testType", "heuristic", "relatedRisks": [..]}]
  where category is one of happy_path, sad_path, edge_case, boundary, security,
  performance, accessibility, integration, data_integrity and testType is one
  of unit, integration, e2e, api, visual, performance
- "gaps": [{"title", "severity", "recommendation", "riskIfIgnored"}]
- "acceptanceCriteria": [..]
- "testCoverage": {"unit": [..], "integration": [..], "e2e": [..], "manual": [..]}
- "productImpact": a short business-facing summary of the risks

Ground every risk in lines of the diff. Prefer fewer, specific scenarios over
many generic ones."""


class PRAnalysisPrompt(PromptTemplate[PRAnalysisContext]):
    """Asks the model for a structured risk/quality assessment of a diff."""

    @property
    def name(self) -> str:
        return "pr_analysis"

    def _system_instruction(self, context: PRAnalysisContext) -> str:
        return _SYSTEM

    def _build_sections(self, context: PRAnalysisContext) -> list[PromptSection]:
        files = "\n".join(f"- {path}" for path in context.changed_files) or "None detected."
        sections = [
            PromptSection(label="Pull Request", content=f"Title: {context.title}"),
            PromptSection(label="Description", content=context.description),
            PromptSection(label="Changed Files", content=files),
            format_diff_section(context.diff),
        ]
        if context.truncated:
            sections.append(
                PromptSection(
                    label="Note",
                    content="The diff was truncated; flag areas you could not inspect.",
                )
            )
        return sections
