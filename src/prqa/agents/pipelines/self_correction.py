"""Bounded generate → validate → regenerate loop for test candidates.

Round ``n`` validates the candidates still in question; the failing ones are
regenerated (in parallel, one gateway call each) and validated again in
round ``n + 1``.  Passing candidates are never sent back to the gateway.
The loop stops when every candidate passes or after ``max_rounds``
validations, whichever comes first; candidates still failing then are
dropped.  A gateway error during regeneration aborts the whole loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from prqa.agents.validators.test_validator import TestValidator
from prqa.llm.usage import call_scope

if TYPE_CHECKING:
    from prqa.agents.builders.test_generator import TestGenerator
    from prqa.agents.validators.test_validator import BatchValidationResult, ValidationResult
    from prqa.models.generated_test import GeneratedTest
    from prqa.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 3


@dataclass(frozen=True)
class CorrectionRound:
    """What happened in one validation round."""

    number: int
    validated: tuple[str, ...]
    """Candidate ids validated in this round."""

    failed: tuple[str, ...]
    regenerated: tuple[str, ...] = ()
    """Candidate ids sent back to the gateway after this round."""


@dataclass
class SelfCorrectionResult:
    """Outcome of the loop.  Only ``accepted`` candidates may be written."""

    accepted: list[GeneratedTest] = field(default_factory=list)
    dropped: list[GeneratedTest] = field(default_factory=list)
    validations: dict[str, ValidationResult] = field(default_factory=dict)
    """Latest validation result per candidate id."""

    rounds: list[CorrectionRound] = field(default_factory=list)

    @property
    def rounds_used(self) -> int:
        return len(self.rounds)

    @property
    def complete(self) -> bool:
        """True when no candidate had to be dropped."""
        return not self.dropped

    def to_dict(self) -> dict[str, Any]:
        return {
            "rounds": self.rounds_used,
            "accepted": [c.path for c in self.accepted],
            "dropped": [
                {"path": c.path, "errors": self.validations[c.candidate_id].error_messages()}
                for c in self.dropped
            ],
        }


class SelfCorrectionLoop:
    """Drives a :class:`TestGenerator` and a :class:`TestValidator` to a fixed point."""

    def __init__(
        self,
        generator: TestGenerator,
        validator: TestValidator | None = None,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self._generator = generator
        self._validator = validator or TestValidator()
        self._max_rounds = max_rounds

    async def run(
        self,
        candidates: list[GeneratedTest],
        *,
        guidance: list[str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> SelfCorrectionResult:
        """Run the loop over *candidates*.

        Raises:
            GatewayError: If any regeneration call fails; nothing is accepted.
            RunCancelled: If *cancel* fires between rounds.
        """
        current = {c.candidate_id: c for c in candidates}
        pending = list(current)
        result = SelfCorrectionResult()

        for number in range(1, self._max_rounds + 1):
            if not pending:
                break
            if cancel is not None:
                cancel.raise_if_cancelled()

            batch = self._validator.validate_batch(current[cid] for cid in pending)
            result.validations.update(batch.results)
            failed = batch.failed_ids
            is_last = number == self._max_rounds

            if not failed or is_last:
                result.rounds.append(
                    CorrectionRound(number=number, validated=tuple(pending), failed=tuple(failed))
                )
                break

            logger.info(
                "Round %d: %d of %d candidates failed validation, regenerating",
                number,
                len(failed),
                len(pending),
            )
            regenerated = await self._regenerate(
                [current[cid] for cid in failed], batch, number + 1, guidance
            )
            for candidate in regenerated:
                current[candidate.candidate_id] = candidate
            result.rounds.append(
                CorrectionRound(
                    number=number,
                    validated=tuple(pending),
                    failed=tuple(failed),
                    regenerated=tuple(failed),
                )
            )
            pending = failed

        for cid, candidate in current.items():
            if result.validations[cid].passed:
                result.accepted.append(candidate)
            else:
                result.dropped.append(candidate)

        if result.dropped:
            logger.warning(
                "Dropping %d candidate(s) after %d rounds: %s",
                len(result.dropped),
                result.rounds_used,
                ", ".join(c.path for c in result.dropped),
            )
        logger.info(
            "Self-correction finished in %d round(s): %d accepted, %d dropped",
            result.rounds_used,
            len(result.accepted),
            len(result.dropped),
        )
        return result

    async def _regenerate(
        self,
        failing: list[GeneratedTest],
        batch: BatchValidationResult,
        round_number: int,
        guidance: list[str] | None,
    ) -> list[GeneratedTest]:
        with call_scope(round=round_number):
            outcomes = await asyncio.gather(
                *(
                    self._generator.regenerate(
                        candidate,
                        batch.results[candidate.candidate_id],
                        batch.suggestions.get(candidate.candidate_id, []),
                        round=round_number,
                        guidance=guidance,
                    )
                    for candidate in failing
                ),
                return_exceptions=True,
            )

        regenerated: list[GeneratedTest] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            regenerated.append(outcome)
        return regenerated
