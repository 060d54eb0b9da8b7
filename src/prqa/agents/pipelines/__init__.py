"""Multi-step pipelines built from agents."""

from prqa.agents.pipelines.self_correction import (
    CorrectionRound,
    SelfCorrectionLoop,
    SelfCorrectionResult,
)

__all__ = [
    "CorrectionRound",
    "SelfCorrectionLoop",
    "SelfCorrectionResult",
]
