"""Defensive coercion for values read back from JSON."""

from __future__ import annotations

from typing import TypeVar

T = TypeVar("T", bound=str)


def as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def as_optional_bool(value: object) -> bool | None:
    return value if isinstance(value, bool) else None


def as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    return value if isinstance(value, int) else default


def as_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None


def as_optional_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    return float(value) if isinstance(value, (int, float)) else None


def as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def as_str_map(value: object) -> dict[str, str] | None:
    if not isinstance(value, dict):
        return None
    result: dict[str, str] = {}
    for key, val in value.items():
        if isinstance(key, str) and isinstance(val, str):
            result[key] = val
    return result


def as_bool_map(value: object) -> dict[str, bool]:
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if isinstance(k, str) and isinstance(v, bool)}


def as_dict(value: object) -> dict[str, object]:
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if isinstance(k, str)}


def as_literal(value: object, allowed: set[str], default: T) -> T:
    if isinstance(value, str) and value in allowed:
        return value  # type: ignore[return-value]
    return default


def as_optional_literal(value: object, allowed: set[str]) -> str | None:
    if isinstance(value, str) and value in allowed:
        return value
    return None


def pick(data: dict[str, object], *keys: str) -> object:
    """Return the first present key, so snake_case and camelCase spellings both load."""
    for key in keys:
        if key in data:
            return data[key]
    return None
