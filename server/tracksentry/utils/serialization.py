"""Shared serialization helpers for camelCase conversion.

Provides a single ``snake_to_camel`` implementation used by
Pydantic model configs and control-surface payloads.
"""

from __future__ import annotations


def snake_to_camel(name: str) -> str:
    """Convert a snake_case string to camelCase.

    Args:
        name: A snake_case identifier such as
            ``"sites_tracked"``.

    Returns:
        The camelCase equivalent, e.g. ``"sitesTracked"``.
    """
    parts = name.split("_")
    return parts[0] + "".join(w.capitalize() for w in parts[1:])


def to_jsonable(value: object) -> object:
    """Convert sets and tuples into lists, recursively.

    Persisted records must be plain JSON values, so any set
    held in engine state is flattened into a sorted list
    before it reaches the persistence capability.
    """
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(to_jsonable(v) for v in value)  # type: ignore[type-var]
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
