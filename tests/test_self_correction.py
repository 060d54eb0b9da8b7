"""Tests for the bounded generate/validate/regenerate loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from prqa.agents.builders.test_generator import TestGenerator
from prqa.agents.pipelines.self_correction import SelfCorrectionLoop
from prqa.llm.engine import GatewayTransientError
from prqa.models.generated_test import GeneratedTest, TestRole
from prqa.utils.cancellation import CancellationToken, RunCancelled

if TYPE_CHECKING:
    from conftest import ScriptedEngine

    from prqa.llm.tracked_engine import TrackedLLMEngine
    from prqa.llm.usage import UsageLedger


def _candidates(sources: dict[str, str]) -> list[GeneratedTest]:
    return [
        GeneratedTest("C01", "tests/e2e/pages/LoginPage.ts", sources["page"], TestRole.PAGE_OBJECT),
        GeneratedTest("C02", "tests/e2e/tests/login.spec.ts", sources["spec"]),
        GeneratedTest("C03", "tests/e2e/tests/lockout.spec.ts", sources["spec_missing_expect"]),
    ]


def _fixed(sources: dict[str, str]) -> str:
    return sources["spec_missing_expect"].replace("{ test }", "{ test, expect }")


@pytest.mark.asyncio
async def test_all_valid_in_first_round(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine, sources: dict[str, str]
) -> None:
    loop = SelfCorrectionLoop(TestGenerator(tracked))

    result = await loop.run(_candidates(sources)[:2])

    assert result.rounds_used == 1
    assert result.complete
    assert [c.candidate_id for c in result.accepted] == ["C01", "C02"]
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_only_failing_candidate_is_regenerated(
    scripted: ScriptedEngine,
    tracked: TrackedLLMEngine,
    ledger: UsageLedger,
    sources: dict[str, str],
) -> None:
    scripted.script("test_regeneration", {"content": _fixed(sources)})
    loop = SelfCorrectionLoop(TestGenerator(tracked), max_rounds=3)

    result = await loop.run(_candidates(sources))

    assert len(result.accepted) == 3
    assert result.dropped == []
    assert result.rounds_used == 2
    first, second = result.rounds
    assert first.validated == ("C01", "C02", "C03")
    assert first.failed == ("C03",)
    assert first.regenerated == ("C03",)
    assert second.validated == ("C03",)
    assert second.failed == ()

    [request] = scripted.calls_for("test_regeneration")
    assert "lockout.spec.ts" in request.messages[1].content
    [record] = ledger.records()
    assert record.round == 2

    regenerated = next(c for c in result.accepted if c.candidate_id == "C03")
    assert regenerated.round == 2
    assert result.validations["C03"].passed


@pytest.mark.parametrize("max_rounds", [1, 2, 3, 5])
@pytest.mark.asyncio
async def test_never_validating_candidate_terminates(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine, sources: dict[str, str], max_rounds: int
) -> None:
    scripted.script("test_regeneration", {"content": sources["spec_missing_expect"]})
    loop = SelfCorrectionLoop(TestGenerator(tracked), max_rounds=max_rounds)

    result = await loop.run(_candidates(sources))

    assert result.rounds_used == max_rounds
    assert len(scripted.calls_for("test_regeneration")) == max_rounds - 1
    assert [c.candidate_id for c in result.dropped] == ["C03"]
    assert [c.candidate_id for c in result.accepted] == ["C01", "C02"]
    assert result.to_dict()["dropped"][0]["path"] == "tests/e2e/tests/lockout.spec.ts"
    assert result.rounds[-1].regenerated == ()


@pytest.mark.asyncio
async def test_accepted_candidates_all_passed_their_last_validation(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine, sources: dict[str, str]
) -> None:
    scripted.script(
        "test_regeneration",
        {"content": "const broken = ("},
        {"content": _fixed(sources)},
    )
    result = await SelfCorrectionLoop(TestGenerator(tracked), max_rounds=3).run(
        _candidates(sources)
    )

    assert result.rounds_used == 3
    assert all(result.validations[c.candidate_id].passed for c in result.accepted)
    assert len(result.accepted) == 3


@pytest.mark.asyncio
async def test_gateway_error_aborts_loop(
    scripted: ScriptedEngine, tracked: TrackedLLMEngine, sources: dict[str, str]
) -> None:
    scripted.script("test_regeneration", GatewayTransientError("rate limited", retries=3))

    with pytest.raises(GatewayTransientError):
        await SelfCorrectionLoop(TestGenerator(tracked)).run(_candidates(sources))


@pytest.mark.asyncio
async def test_cancellation_between_rounds(
    tracked: TrackedLLMEngine, sources: dict[str, str]
) -> None:
    token = CancellationToken()
    token.cancel("superseded by a newer push")

    with pytest.raises(RunCancelled, match="newer push"):
        await SelfCorrectionLoop(TestGenerator(tracked)).run(_candidates(sources), cancel=token)


def test_round_bound_must_be_positive(tracked: TrackedLLMEngine) -> None:
    with pytest.raises(ValueError, match="at least 1"):
        SelfCorrectionLoop(TestGenerator(tracked), max_rounds=0)
