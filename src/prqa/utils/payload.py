"""Coercion helpers for loosely-shaped model JSON."""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def dict_list(value: Any) -> list[dict[str, Any]]:
    """Return the dict items of *value*, or ``[]`` when it is not a list."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: type[E], value: Any, default: E) -> E:
    """Map *value* onto *enum_cls* by lowercase value, falling back to *default*."""
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default
