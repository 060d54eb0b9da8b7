"""Data models for prqa."""

from prqa.models.analysis import AnalysisResult, MergeRecommendation, RiskLevel
from prqa.models.pull_request import AnalysisRequest, PullRequestInfo
from prqa.models.report import RunReport, RunState, StageReport, StageStatus

__all__ = [
    "AnalysisRequest",
    "AnalysisResult",
    "MergeRecommendation",
    "PullRequestInfo",
    "RiskLevel",
    "RunReport",
    "RunState",
    "StageReport",
    "StageStatus",
]
