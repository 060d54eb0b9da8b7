"""Pull request context and the immutable per-run analysis request."""

from __future__ import annotations

from dataclasses import dataclass, field

from prqa.utils.diff import extract_changed_files


@dataclass(frozen=True)
class PullRequestInfo:
    """Metadata and diff of the pull request under analysis."""

    owner: str
    repo: str
    number: int
    title: str
    diff: str
    body: str = ""
    head_ref: str = ""
    """Source branch name."""

    action: str = "opened"
    """Webhook action that produced the event (opened, synchronize, ...)."""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def changed_files(self) -> list[str]:
        return extract_changed_files(self.diff)


@dataclass(frozen=True)
class AnalysisRequest:
    """Everything one run needs, fixed when the run starts."""

    run_id: str
    pull_request: PullRequestInfo
    trigger_kind: str
    """``pull_request``, ``comment_command``, ``silent`` or ``ci_failure``."""

    required_stages: tuple[str, ...] = ()
    optional_stages: tuple[str, ...] = ()
    notify: bool = True
    """False for silent runs; the report is still returned internally."""

    requirements_text: str = ""
    coverage_artifact: bytes | str | None = field(default=None, repr=False)

    @property
    def requested_stages(self) -> tuple[str, ...]:
        return self.required_stages + self.optional_stages
