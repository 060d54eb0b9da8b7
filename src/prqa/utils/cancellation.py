"""Run-level cancellation signal."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class RunCancelled(Exception):
    """Raised at a checkpoint once the run has been cancelled."""


class CancellationToken:
    """Cooperative cancellation shared by every stage of one run.

    Loops call :meth:`raise_if_cancelled` between rounds; the orchestrator
    races in-flight work against :meth:`wait` so gateway calls are aborted
    too.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Run cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason)

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason
