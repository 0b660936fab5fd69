"""Models for browsing-pattern analysis and anomaly alerts."""

from __future__ import annotations

import math
import time
from typing import Literal

import pydantic

from tracksentry.models.base import CamelModel

AlertType = Literal["high_tracker_count", "high_risk_tracker", "category_spike"]
AlertSeverity = Literal["info", "warning", "alert"]


class TrackerEvent(CamelModel):
    """One tracker observation fed to the pattern analyzer."""

    session_id: str
    domain: str
    category: str = "Unknown"
    risk_score: int = 0
    website_url: str | None = None
    timestamp: float = pydantic.Field(default_factory=time.time)


class AnomalyAlert(CamelModel):
    """An anomaly raised against a rolling baseline."""

    type: AlertType
    severity: AlertSeverity
    message: str
    score: float
    domain: str | None = None
    category: str | None = None
    timestamp: float = pydantic.Field(default_factory=time.time)

    @pydantic.field_serializer("score")
    def _finite_score(self, value: float) -> float | None:
        return value if math.isfinite(value) else None


class RiskBreakdown(CamelModel):
    """Count of events per risk tier."""

    low: int = 0
    medium: int = 0
    high: int = 0
    critical: int = 0


class SessionSummary(CamelModel):
    """Aggregate view of one session's tracker events."""

    session_id: str
    duration_minutes: int = 0
    total_trackers: int = 0
    unique_trackers: int = 0
    avg_risk_score: int = 0
    category_breakdown: dict[str, int] = pydantic.Field(default_factory=dict)
    risk_breakdown: RiskBreakdown = pydantic.Field(default_factory=RiskBreakdown)
    alert_count: int = 0
    recent_alerts: list[AnomalyAlert] = pydantic.Field(default_factory=list)


class PatternInsight(CamelModel):
    """A human-readable observation about historical browsing."""

    type: Literal["increase", "decrease", "category", "time"]
    message: str


class SiteComparison(CamelModel):
    """Current session's trackers on a site versus its history."""

    has_baseline: bool = False
    current_trackers: int = 0
    avg_trackers: float = 0.0
    visit_count: int = 0
    is_unusual: bool = False


class BaselineStats(CamelModel):
    """Snapshot of a rolling baseline."""

    mean: float = 0.0
    std_dev: float = 0.0
    data_points: int = 0
