"""Prompt template library for the pipeline stages."""

from prqa.llm.prompts.base import PromptSection, PromptTemplate, RenderedPrompt
from prqa.llm.prompts.ci_fix import CIClassificationPrompt, CIFixContext, CIFixPrompt
from prqa.llm.prompts.pr_analysis import PRAnalysisContext, PRAnalysisPrompt
from prqa.llm.prompts.requirements_analysis import (
    RequirementsAnalysisPrompt,
    RequirementsContext,
)
from prqa.llm.prompts.test_generation import (
    RegenerationContext,
    TestGenerationContext,
    TestGenerationPrompt,
    TestRegenerationPrompt,
)

__all__ = [
    "CIClassificationPrompt",
    "CIFixContext",
    "CIFixPrompt",
    "PRAnalysisContext",
    "PRAnalysisPrompt",
    "PromptSection",
    "PromptTemplate",
    "RegenerationContext",
    "RenderedPrompt",
    "RequirementsAnalysisPrompt",
    "RequirementsContext",
    "TestGenerationContext",
    "TestGenerationPrompt",
    "TestRegenerationPrompt",
]
