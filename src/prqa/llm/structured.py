"""Extraction and repair of JSON objects embedded in model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from prqa.llm.errors import MalformedResponseError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)(?:\n```|$)", re.DOTALL)

# Trailing fragments that cannot be completed: a dangling key, an open
# string value, or a trailing comma/colon.
_DANGLING_KEY_RE = re.compile(r',?\s*"[^"\\]*(?:\\.[^"\\]*)*"\s*:\s*$')
_DANGLING_COMMA_RE = re.compile(r"[,:]\s*$")

_PREVIEW_CHARS = 200


def extract_json(text: str) -> dict[str, Any] | None:
    """Return the outermost JSON object found in *text*, or ``None``.

    Handles prose before/after the object, fenced code blocks, and output
    truncated by the token limit (the unfinished tail is dropped and the
    open brackets are closed).
    """
    if not text or not text.strip():
        return None

    candidates: list[str] = []
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1))
    candidates.append(text)

    for candidate in candidates:
        start = candidate.find("{")
        if start == -1:
            continue
        body = candidate[start:]
        end = body.rfind("}")
        if end != -1:
            parsed = _loads_object(body[: end + 1])
            if parsed is not None:
                return parsed
        repaired = repair_truncated_json(body)
        if repaired is not None:
            parsed = _loads_object(repaired)
            if parsed is not None:
                logger.debug("Recovered truncated JSON response (%d chars)", len(body))
                return parsed
    return None


def repair_truncated_json(body: str) -> str | None:
    """Close a truncated JSON document, or return ``None`` if hopeless."""
    stack: list[str] = []
    in_string = False
    escaped = False
    last_safe = 0

    for idx, char in enumerate(body):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
                last_safe = idx + 1
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
            last_safe = idx + 1
        elif char in "}]":
            if not stack:
                return None
            stack.pop()
            last_safe = idx + 1
        elif not char.isspace():
            last_safe = idx + 1

    if not stack and not in_string:
        return body

    # An unterminated string is dropped entirely.
    trimmed = body[:last_safe].rstrip() if in_string else body.rstrip()
    trimmed = _DANGLING_KEY_RE.sub("", trimmed)
    trimmed = _DANGLING_COMMA_RE.sub("", trimmed)

    # Recompute the open brackets for the trimmed text.
    closers = _open_brackets(trimmed)
    if closers is None:
        return None
    return trimmed + "".join(reversed(closers))


def parse_json_payload(
    text: str,
    *,
    required: tuple[str, ...] = (),
    model: str = "",
    retries: int = 0,
) -> dict[str, Any]:
    """Parse *text* into a JSON object holding every key in *required*.

    Raises:
        MalformedResponseError: If no object can be extracted or keys are missing.
    """
    payload = extract_json(text)
    if payload is None:
        preview = text[:_PREVIEW_CHARS].replace("\n", " ")
        raise MalformedResponseError(
            f"Response is not a JSON object: {preview!r}",
            model=model,
            retries=retries,
            raw_text=text,
        )
    missing = [key for key in required if key not in payload]
    if missing:
        raise MalformedResponseError(
            f"Response is missing required keys: {', '.join(missing)}",
            model=model,
            retries=retries,
            raw_text=text,
        )
    return payload


# ── Helpers ───────────────────────────────────────────────────────


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _open_brackets(text: str) -> list[str] | None:
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack:
                return None
            stack.pop()
    if in_string:
        return None
    return stack
