"""Models for the control surface exposed to UI and telemetry layers."""

from __future__ import annotations

import time
from typing import Any

import pydantic

from tracksentry.models.base import CamelModel
from tracksentry.models.policy import EnforcementMode, OverrideScope


class ControlResult(CamelModel):
    """Uniform result for every control operation."""

    success: bool
    data: Any = None
    error: str | None = None


class TrackerRecord(CamelModel):
    """Latest state of one tracker within a session."""

    domain: str
    company: str = "Unknown"
    category: str = "Unknown"
    risk_score: int = 0
    mode: str = "allow"
    request_count: int = 0
    first_seen: float = pydantic.Field(default_factory=time.time)
    last_seen: float = pydantic.Field(default_factory=time.time)
    deferred: bool = False


class SessionStats(CamelModel):
    session_id: str
    total_requests: int = 0
    tracker_count: int = 0
    by_mode: dict[str, int] = pydantic.Field(default_factory=dict)
    by_category: dict[str, int] = pydantic.Field(default_factory=dict)
    contexts: list[str] = pydantic.Field(default_factory=list)
    context_description: str = ""
    deferred_blocks: list[str] = pydantic.Field(default_factory=list)
    privacy_score: int = 100


class OverrideRequest(CamelModel):
    domain: str
    mode: EnforcementMode
    scope: OverrideScope = "tab"
    session_id: str | None = None


class CategoryFeedback(CamelModel):
    domain: str
    url: str | None = None
    old_category: str | None = None
    new_category: str
    timestamp: float = pydantic.Field(default_factory=time.time)


class ContextUpdate(CamelModel):
    page_url: str
    dom_signals: dict[str, list[str]] = pydantic.Field(default_factory=dict)


class SessionReport(CamelModel):
    """Structured export of a session for the telemetry layer."""

    session_id: str
    generated_at: float = pydantic.Field(default_factory=time.time)
    stats: SessionStats
    trackers: list[TrackerRecord] = pydantic.Field(default_factory=list)
    active_rules: list[dict[str, Any]] = pydantic.Field(default_factory=list)
    pattern_summary: dict[str, Any] = pydantic.Field(default_factory=dict)
    insights: dict[str, Any] = pydantic.Field(default_factory=dict)
