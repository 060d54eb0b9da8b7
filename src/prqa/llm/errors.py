"""Gateway error hierarchy.

Every failure that leaves the model gateway is one of these classes, so
callers never need to know which backend SDK raised the original error.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for model gateway failures."""

    def __init__(self, message: str, *, model: str = "", retries: int = 0) -> None:
        super().__init__(message)
        self.model = model
        self.retries = retries


class GatewayTransientError(GatewayError):
    """Retryable failure (timeout, rate limit, 5xx, connection) whose retry budget ran out."""


class GatewayFatalError(GatewayError):
    """Non-retryable failure such as invalid credentials or a malformed request."""


class MalformedResponseError(GatewayError):
    """The backend answered, but the content does not have the expected structure."""

    def __init__(
        self,
        message: str,
        *,
        model: str = "",
        retries: int = 0,
        raw_text: str = "",
    ) -> None:
        super().__init__(message, model=model, retries=retries)
        self.raw_text = raw_text
