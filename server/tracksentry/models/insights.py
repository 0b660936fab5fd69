"""Models for aggregated, human-facing privacy insights."""

from __future__ import annotations

from typing import Any, Literal

import pydantic

from tracksentry.models.base import CamelModel

Priority = Literal["critical", "high", "medium", "info"]
Severity = Literal["critical", "high", "medium"]


class CrossSiteTracker(CamelModel):
    """A tracker seen on two or more first-party sites."""

    tracker: str
    owner: str
    sites_tracked: int
    sites: list[str]
    category: str
    risk_score: int
    message: str


class CompanyTracking(CamelModel):
    """Cross-site trackers grouped by owning company."""

    owner: str
    tracker_count: int
    site_count: int
    trackers: list[str]
    message: str


class CrossSiteReport(CamelModel):
    trackers: list[CrossSiteTracker] = pydantic.Field(default_factory=list)
    companies: list[CompanyTracking] = pydantic.Field(default_factory=list)
    total_cross_site_trackers: int = 0
    headline: str = "No cross-site tracking detected yet"


class DataExposureItem(CamelModel):
    """One data type and the companies that likely collect it."""

    data_type: str
    company_count: int
    companies: list[str]
    message: str


class DataExposureReport(CamelModel):
    exposed_data_types: list[DataExposureItem] = pydantic.Field(default_factory=list)
    total_companies: int = 0
    total_trackers: int = 0
    headline: str = "No data exposure detected"


class TechniqueLabel(CamelModel):
    id: str
    label: str


class FingerprintThreat(CamelModel):
    """A fingerprinting domain and its severity tier."""

    domain: str
    techniques: list[TechniqueLabel]
    technique_count: int
    call_count: int
    severity: Severity
    message: str


class FingerprintReport(CamelModel):
    threats: list[FingerprintThreat] = pydantic.Field(default_factory=list)
    total_domains: int = 0
    techniques_used: list[TechniqueLabel] = pydantic.Field(default_factory=list)
    headline: str = "No fingerprinting detected"


class Recommendation(CamelModel):
    """A suggested user action."""

    type: Literal["BLOCK_TRACKER", "BLOCK_FINGERPRINTER", "REDUCE_EXPOSURE", "SAFE_SITE", "IMPROVE_SCORE"]
    priority: Priority
    title: str
    description: str
    domain: str | None = None
    action: dict[str, Any] | None = None


class ScoreItem(CamelModel):
    """One itemised deduction (positive) or bonus (negative)."""

    reason: str
    penalty: int


class PrivacyScoreBreakdown(CamelModel):
    score: int
    grade: Literal["A", "B", "C", "D", "F"]
    deductions: list[ScoreItem] = pydantic.Field(default_factory=list)
    headline: str


class InsightsSummary(CamelModel):
    total_trackers: int = 0
    total_sites_visited: int = 0
    total_requests: int = 0
    blocked: int = 0
    allowed: int = 0
    session_duration: int = 0
    fingerprint_attempts: int = 0
    unique_companies: int = 0


class Insights(CamelModel):
    """Everything the insights layer exposes in one payload."""

    cross_site_tracking: CrossSiteReport
    data_exposure: DataExposureReport
    fingerprinting_threats: FingerprintReport
    recommendations: list[Recommendation]
    privacy_score: PrivacyScoreBreakdown
    summary: InsightsSummary
