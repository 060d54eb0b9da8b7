"""Tests for command parsing, trigger routing and stage plans."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

import pytest

from prqa.agents.analyzers.requirements import RequirementsDocument
from prqa.agents.debuggers.ci_fixer import CIFailureInfo
from prqa.triggers import (
    ANALYSIS,
    CI_FIX,
    COVERAGE,
    DEPENDENCIES,
    EXECUTION,
    FEEDBACK,
    REQUIREMENTS,
    TESTS,
    CIFailureEvent,
    CommandKind,
    CommentCommand,
    PullRequestEvent,
    StagePlan,
    is_self_authored,
    parse_command,
    plan_for,
    pull_request_trigger,
)

if TYPE_CHECKING:
    from prqa.models.pull_request import PullRequestInfo


# ── Commands ─────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("comment", "kind"),
    [
        ("/qa analyze", CommandKind.ANALYZE),
        ("/QA Analysis please", CommandKind.ANALYZE),
        ("/qa generate tests", CommandKind.GENERATE_TESTS),
        ("/qa gen-test", CommandKind.GENERATE_TESTS),
        ("/qa tests\nfor the login flow", CommandKind.GENERATE_TESTS),
        ("  /qa coverage", CommandKind.COVERAGE),
        ("/qa help", CommandKind.HELP),
        ("/qa", CommandKind.HELP),
    ],
)
def test_recognized_commands(comment: str, kind: CommandKind) -> None:
    command = parse_command(comment)
    assert command is not None
    assert command.kind is kind
    assert command.recognized


def test_unknown_command_is_addressed_but_unrecognized() -> None:
    command = parse_command("/qa   deploy   Production")
    assert command is not None
    assert command.text == "deploy production"
    assert not command.recognized


@pytest.mark.parametrize("comment", ["", "LGTM", "please /qa analyze", "/qabc analyze"])
def test_comments_not_addressed_to_the_bot(comment: str) -> None:
    assert parse_command(comment) is None


def test_custom_prefix() -> None:
    command = parse_command("!bot coverage", prefix="!bot")
    assert command is not None
    assert command.kind is CommandKind.COVERAGE


# ── Plans ────────────────────────────────────────────────────────


def test_full_plan_without_requirements(pull_request: PullRequestInfo) -> None:
    plan = plan_for(PullRequestEvent(pull_request=pull_request))

    assert plan is not None
    assert plan.required == (ANALYSIS,)
    assert plan.optional == (FEEDBACK, DEPENDENCIES, COVERAGE, TESTS, EXECUTION)
    assert not plan.includes(REQUIREMENTS)


@pytest.mark.parametrize(
    "extra",
    [
        {"requirements_text": "As a user I am locked out after 5 failures"},
        {"document": RequirementsDocument(text="stories", name="stories.md")},
    ],
)
def test_requirements_stage_runs_when_requirements_given(
    pull_request: PullRequestInfo, extra: dict[str, object]
) -> None:
    plan = plan_for(PullRequestEvent(pull_request=pull_request, **extra))  # type: ignore[arg-type]
    assert plan is not None
    assert plan.includes(REQUIREMENTS)
    assert not plan.is_required(REQUIREMENTS)


def test_silent_plan_is_analysis_only(pull_request: PullRequestInfo) -> None:
    plan = plan_for(PullRequestEvent(pull_request=pull_request, silent=True))
    assert plan == StagePlan(required=(ANALYSIS,))


@pytest.mark.parametrize(
    ("text", "required", "optional"),
    [
        ("/qa analyze", (ANALYSIS,), (FEEDBACK, DEPENDENCIES)),
        ("/qa generate tests", (ANALYSIS, TESTS), (FEEDBACK, EXECUTION)),
        ("/qa coverage", (COVERAGE,), ()),
        ("/qa help", (), ()),
    ],
)
def test_command_plans(
    pull_request: PullRequestInfo,
    text: str,
    required: tuple[str, ...],
    optional: tuple[str, ...],
) -> None:
    trigger = CommentCommand(pull_request=pull_request, text=text)
    plan = plan_for(trigger, parse_command(text))

    assert plan == StagePlan(required=required, optional=optional)


def test_unrecognized_command_has_no_plan(pull_request: PullRequestInfo) -> None:
    trigger = CommentCommand(pull_request=pull_request, text="/qa deploy")
    assert plan_for(trigger, parse_command(trigger.text)) is None
    assert plan_for(trigger, None) is None


def test_ci_failure_plan() -> None:
    trigger = CIFailureEvent(failure=CIFailureInfo(job="e2e", log="boom"))
    plan = plan_for(trigger)

    assert plan is not None
    assert plan.stages == (CI_FIX,)
    assert trigger.kind == "ci_failure"


def test_plan_without_stage() -> None:
    plan = StagePlan(required=(ANALYSIS, TESTS), optional=(EXECUTION,)).without(TESTS)
    assert plan.stages == (ANALYSIS, EXECUTION)


def test_unsupported_trigger() -> None:
    with pytest.raises(TypeError, match="Unsupported trigger"):
        plan_for("not a trigger")  # type: ignore[arg-type]


# ── Routing ──────────────────────────────────────────────────────


def test_hybrid_mode_runs_pull_requests_silently(pull_request: PullRequestInfo) -> None:
    event = pull_request_trigger(pull_request, "hybrid", coverage_artifact="SF:a\nend_of_record\n")

    assert event is not None
    assert event.silent
    assert event.coverage_artifact is not None


def test_auto_mode_notifies(pull_request: PullRequestInfo) -> None:
    event = pull_request_trigger(pull_request, "auto", requirements_text="stories")

    assert event is not None
    assert not event.silent
    assert event.requirements_text == "stories"


def test_command_mode_ignores_pull_requests(pull_request: PullRequestInfo) -> None:
    assert pull_request_trigger(pull_request, "command") is None


@pytest.mark.parametrize(
    "changes",
    [{"title": "[PRQA] Add generated tests"}, {"head_ref": "prqa/tests-42"}],
)
def test_self_authored_pull_requests_are_ignored(
    pull_request: PullRequestInfo, changes: dict[str, str]
) -> None:
    own = dataclasses.replace(pull_request, **changes)

    assert is_self_authored(own)
    assert pull_request_trigger(own, "auto") is None
    assert not is_self_authored(pull_request)
