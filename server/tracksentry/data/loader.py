"""
Data loader for the static tracker lookup and policy files.

The tracker lookup ships as ``trackers.json`` alongside this
module.  A policy file, when configured, is merged over the
code defaults in :class:`~tracksentry.models.policy.PolicyConfig`.
"""

from __future__ import annotations

import json
import pathlib
from typing import Any

import pydantic

from tracksentry.models.policy import PolicyConfig
from tracksentry.utils import logger

log = logger.create_logger("Loader")

# Resolve path to the data directory (same directory as this module)
_DATA_DIR = pathlib.Path(__file__).resolve().parent


def _load_json(path: pathlib.Path) -> Any:
    """Load and parse a JSON file.

    Raises:
        FileNotFoundError: If the JSON file does not exist.
        json.JSONDecodeError: If the file contains invalid JSON.
    """
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    with open(path, encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as exc:
            raise json.JSONDecodeError(
                f"Invalid JSON in {path.name}: {exc.msg}",
                exc.doc,
                exc.pos,
            ) from exc


_tracker_database: dict[str, dict[str, str]] | None = None


def get_tracker_database() -> dict[str, dict[str, str]]:
    """Get the static tracker lookup (lazy loaded and cached)."""
    global _tracker_database
    if _tracker_database is None:
        raw: dict[str, dict[str, str]] = _load_json(_DATA_DIR / "trackers.json")
        _tracker_database = {domain.lower(): entry for domain, entry in raw.items()}
        log.debug("Tracker database loaded", {"entries": len(_tracker_database)})
    return _tracker_database


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_policy(path: pathlib.Path | str | None = None) -> PolicyConfig:
    """Build the policy configuration.

    Keys in the file use the snake_case field names and nested
    sections are merged key by key.  Without *path* the code
    defaults are returned.  A file that is missing, unparseable
    or fails validation is logged and the defaults are used,
    so a bad policy file never stops the engine from starting.
    """
    defaults = PolicyConfig()
    if path is None:
        return defaults

    try:
        overlay = _load_json(pathlib.Path(path))
        if not isinstance(overlay, dict):
            raise ValueError("policy file must contain a JSON object")
        merged = _deep_merge(defaults.model_dump(), overlay)
        policy = PolicyConfig.model_validate(merged)
    except (OSError, ValueError, pydantic.ValidationError) as exc:
        log.error("Policy file rejected, using defaults", {"path": str(path), "error": str(exc)})
        return defaults

    log.info("Policy loaded", {"path": str(path)})
    return policy
