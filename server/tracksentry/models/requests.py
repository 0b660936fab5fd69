"""Models for intercepted requests, tracker identities and verdicts."""

from __future__ import annotations

import time
from typing import Literal

import pydantic

from tracksentry.models.base import CamelModel

TrackerCategory = Literal[
    "Advertising",
    "Analytics",
    "Session Recording",
    "Social",
    "Tag Manager",
    "Payment",
    "CDN",
    "Security",
    "Unknown",
]

TRACKER_CATEGORIES: tuple[str, ...] = (
    "Advertising",
    "Analytics",
    "Session Recording",
    "Social",
    "Tag Manager",
    "Payment",
    "CDN",
    "Security",
    "Unknown",
)

# Resource types that indicate a programmatic fetch rather
# than a static resource load.
PROGRAMMATIC_TYPES = frozenset({"xmlhttprequest", "fetch", "xhr", "beacon", "ping", "websocket"})


def normalize_category(value: str | None) -> str:
    """Map a free-form category onto the closed set, defaulting to ``Unknown``."""
    if not value:
        return "Unknown"
    for category in TRACKER_CATEGORIES:
        if category.lower() == value.strip().lower():
            return category
    return "Unknown"


class InterceptedRequest(CamelModel):
    """One outbound request reported by the interception capability."""

    url: str
    resource_type: str = "other"
    initiator_url: str | None = None
    session_id: str
    observed_at: float = pydantic.Field(default_factory=time.time)


class Classification(CamelModel):
    """Category guess from the classifier collaborator."""

    category: str = "Unknown"
    confidence: float = 0.0


class TrackerIdentity(CamelModel):
    """Resolved identity of a destination domain.

    Produced by the knowledge lookup or the classifier
    fallback; never mutated by the engines.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    domain: str
    company: str = "Unknown"
    category: TrackerCategory = "Unknown"
    base_risk: int = 10
    data_collected: tuple[str, ...] = ()
    regulation: str = "Regulatory requirements unclear"
    description: str = ""
    classified: bool = False
    confidence: float | None = None


class RiskFactor(CamelModel):
    """One itemised contribution to a risk score."""

    factor: str
    points: int


class RequestVerdict(CamelModel):
    """Outcome of a single pipeline pass for one request."""

    session_id: str
    domain: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    company: str = "Unknown"
    category: str = "Unknown"
    risk_score: int = 0
    fingerprint_score: int = 0
    contexts: list[str] = pydantic.Field(default_factory=list)
    base_mode: str = "allow"
    mode: str = "allow"
    effective_mode: str = "allow"
    override_source: Literal["score", "context", "user"] = "score"
    deferred: bool = False
    confirmed: bool = True
    alerts: list[str] = pydantic.Field(default_factory=list)
