"""Models for fingerprinting detection."""

from __future__ import annotations

import math
from typing import Any

import pydantic

from tracksentry.models.base import CamelModel


class TechniqueDetail(CamelModel):
    """A flagged technique with its weight and description."""

    technique: str
    risk: int
    description: str


class FingerprintSummary(CamelModel):
    """Per-domain fingerprinting summary for display."""

    domain: str
    detected: bool = False
    risk_score: int = 0
    techniques: list[TechniqueDetail] = pydantic.Field(default_factory=list)
    call_counts: dict[str, int] = pydantic.Field(default_factory=dict)
    summary: str = "No fingerprinting detected"
    anomaly_score: float = 0.0

    @pydantic.field_serializer("anomaly_score")
    def _finite_anomaly(self, value: float) -> float | None:
        return value if math.isfinite(value) else None


class ProbeEvent(CamelModel):
    """An API-probing observation reported by the page layer."""

    domain: str
    type: str
    data: dict[str, Any] = pydantic.Field(default_factory=dict)
