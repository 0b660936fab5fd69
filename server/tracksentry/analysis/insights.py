"""
Actionable privacy insights.

Pure aggregation over what the pipeline has already observed:
which trackers appear on which first-party sites, what data
their categories imply, and which domains the fingerprint
detector has flagged.  Nothing here detects anything new.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from tracksentry.analysis.fingerprint import FingerprintDetector
from tracksentry.models.insights import (
    CompanyTracking,
    CrossSiteReport,
    CrossSiteTracker,
    DataExposureItem,
    DataExposureReport,
    FingerprintReport,
    FingerprintThreat,
    Insights,
    InsightsSummary,
    PrivacyScoreBreakdown,
    Recommendation,
    ScoreItem,
    TechniqueLabel,
)
from tracksentry.utils import logger

log = logger.create_logger("Insights")

MAX_CROSS_SITE_TRACKERS = 10
MAX_COMPANIES = 8
MAX_LISTED_SITES = 5
MAX_LISTED_COMPANIES = 5
MAX_THREATS = 10
MAX_RECOMMENDATIONS = 5
HIGH_RISK_SCORE = 70
EXPOSURE_COMPANY_THRESHOLD = 10
SCORE_NUDGE_THRESHOLD = 60

CATEGORY_DATA_TYPES: dict[str, tuple[str, ...]] = {
    "Analytics": ("browsing history", "page views", "click behavior"),
    "Advertising": ("browsing history", "interests", "demographics", "ad interactions"),
    "Social": ("social profile", "browsing history", "social connections"),
    "Session Recording": ("mouse movements", "keystrokes", "form inputs", "page interactions"),
    "Tag Manager": ("browsing history", "page views"),
    "Payment": ("transaction data",),
    "CDN": ("ip address",),
    "Security": ("device info", "ip address"),
    "Unknown": ("browsing history",),
}

TECHNIQUE_LABELS: dict[str, str] = {
    "canvas": "Canvas Fingerprinting: reads your GPU rendering to create a unique ID",
    "webgl": "WebGL Fingerprinting: probes your graphics card for identification",
    "audio": "Audio Fingerprinting: uses audio processing to uniquely identify your device",
    "navigator": "Navigator Probing: reads your browser, OS and device details",
    "screen": "Screen Fingerprinting: reads your screen resolution and display config",
    "fonts": "Font Enumeration: detects your installed fonts for identification",
    "battery": "Battery Status: monitors your battery to track you",
    "webrtc": "WebRTC Leak: can expose your real IP address",
}

_PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "info": 3}


def _plural(count: int, word: str, suffix: str = "s") -> str:
    return f"{count} {word}{suffix if count != 1 else ''}"


def infer_data_types(category: str) -> tuple[str, ...]:
    """Data types a tracker of *category* likely collects."""
    return CATEGORY_DATA_TYPES.get(category, CATEGORY_DATA_TYPES["Unknown"])


@dataclass
class TrackerHistory:
    """Everything observed about one tracker domain."""

    owner: str = "Unknown"
    category: str = "Unknown"
    risk_score: int = 0
    enforcement_mode: str = "allow"
    sites: set[str] = field(default_factory=set)
    count: int = 0
    data_collected: tuple[str, ...] = ()


class InsightsEngine:
    """Cross-session tracker history and the reports derived from it."""

    def __init__(self, fingerprints: FingerprintDetector) -> None:
        self._fingerprints = fingerprints
        self.trackers: dict[str, TrackerHistory] = {}
        self.sites: dict[str, set[str]] = {}
        self.blocked = 0
        self.allowed = 0
        self.started_at = time.time()

    # ── Recording ───────────────────────────────────────────

    def record_tracker(
        self,
        tracker_domain: str,
        site: str,
        owner: str = "Unknown",
        category: str = "Unknown",
        risk_score: int = 0,
        enforcement_mode: str = "allow",
        data_collected: tuple[str, ...] = (),
    ) -> None:
        history = self.trackers.get(tracker_domain)
        if history is None:
            history = self.trackers[tracker_domain] = TrackerHistory(
                owner=owner, category=category, data_collected=tuple(data_collected)
            )
        history.sites.add(site)
        history.count += 1
        history.risk_score = max(history.risk_score, risk_score)
        history.enforcement_mode = enforcement_mode

        self.sites.setdefault(site, set()).add(tracker_domain)
        if enforcement_mode == "block":
            self.blocked += 1
        else:
            self.allowed += 1

    def record_site_visit(self, site: str) -> None:
        """Register a first-party site even if no tracker ever shows up on it."""
        self.sites.setdefault(site, set())

    def reset(self) -> None:
        self.trackers.clear()
        self.sites.clear()
        self.blocked = 0
        self.allowed = 0
        self.started_at = time.time()
        log.info("Insights history reset")

    # ── Reports ─────────────────────────────────────────────

    def _all_cross_site(self) -> list[CrossSiteTracker]:
        entries = []
        for domain, history in self.trackers.items():
            count = len(history.sites)
            if count < 2:
                continue
            entries.append(
                CrossSiteTracker(
                    tracker=domain,
                    owner=history.owner,
                    sites_tracked=count,
                    sites=sorted(history.sites)[:MAX_LISTED_SITES],
                    category=history.category,
                    risk_score=history.risk_score,
                    message=f"{history.owner} is tracking you across {_plural(count, 'site')}",
                )
            )
        entries.sort(key=lambda t: (-t.sites_tracked, t.tracker))
        return entries

    def cross_site_tracking(self) -> CrossSiteReport:
        """Trackers seen on two or more sites, grouped by owning company."""
        entries = self._all_cross_site()

        grouped: dict[str, tuple[list[str], set[str]]] = {}
        for entry in entries:
            trackers, sites = grouped.setdefault(entry.owner, ([], set()))
            trackers.append(entry.tracker)
            sites.update(self.trackers[entry.tracker].sites)

        companies = [
            CompanyTracking(
                owner=owner,
                tracker_count=len(trackers),
                site_count=len(sites),
                trackers=trackers,
                message=f"{owner} follows you across {len(sites)} sites using {_plural(len(trackers), 'tracker')}",
            )
            for owner, (trackers, sites) in grouped.items()
        ]
        companies.sort(key=lambda c: (-c.site_count, c.owner))

        total = len(entries)
        if total:
            verb = "follows" if total == 1 else "follow"
            headline = f"{_plural(total, 'tracker')} {verb} you across multiple sites"
        else:
            headline = "No cross-site tracking detected yet"

        return CrossSiteReport(
            trackers=entries[:MAX_CROSS_SITE_TRACKERS],
            companies=companies[:MAX_COMPANIES],
            total_cross_site_trackers=total,
            headline=headline,
        )

    def data_exposure(self) -> DataExposureReport:
        """Likely collected data types, most widely shared first."""
        by_type: dict[str, set[str]] = {}
        owners: set[str] = set()
        for history in self.trackers.values():
            owners.add(history.owner)
            data_types = [*infer_data_types(history.category), *(d.lower() for d in history.data_collected)]
            for data_type in data_types:
                by_type.setdefault(data_type, set()).add(history.owner)

        items = [
            DataExposureItem(
                data_type=data_type,
                company_count=len(companies),
                companies=sorted(companies)[:MAX_LISTED_COMPANIES],
                message=f"Your {data_type} is shared with {len(companies)} compan{'ies' if len(companies) != 1 else 'y'}",
            )
            for data_type, companies in by_type.items()
        ]
        items.sort(key=lambda i: (-i.company_count, i.data_type))

        return DataExposureReport(
            exposed_data_types=items,
            total_companies=len(owners),
            total_trackers=len(self.trackers),
            headline=(
                f"Your data is potentially shared with {len(owners)} companies" if owners else "No data exposure detected"
            ),
        )

    def fingerprinting_threats(self) -> FingerprintReport:
        """One entry per domain the fingerprint detector has flagged."""
        flagged = self._fingerprints.flagged_domains()
        threats = []
        for domain, techniques in flagged.items():
            count = len(techniques)
            if count >= 3:
                severity = "critical"
            elif count == 2:
                severity = "high"
            else:
                severity = "medium"
            threats.append(
                FingerprintThreat(
                    domain=domain,
                    techniques=[TechniqueLabel(id=t, label=TECHNIQUE_LABELS.get(t, f"{t} fingerprinting")) for t in sorted(techniques)],
                    technique_count=count,
                    call_count=self._fingerprints.total_calls(domain),
                    severity=severity,
                    message=f"{domain} is fingerprinting your browser using {_plural(count, 'technique')}",
                )
            )
        threats.sort(key=lambda t: (-t.technique_count, t.domain))

        used = sorted({t for techniques in flagged.values() for t in techniques})
        return FingerprintReport(
            threats=threats[:MAX_THREATS],
            total_domains=len(flagged),
            techniques_used=[TechniqueLabel(id=t, label=TECHNIQUE_LABELS.get(t, t)) for t in used],
            headline=(
                f"{_plural(len(threats), 'site')} attempting to fingerprint your browser"
                if threats
                else "No fingerprinting detected"
            ),
        )

    def privacy_score(self) -> PrivacyScoreBreakdown:
        """Start at 100, apply capped deductions and the blocking bonus."""
        score = 100
        items: list[ScoreItem] = []

        cross_site = sum(1 for h in self.trackers.values() if len(h.sites) >= 2)
        if cross_site:
            penalty = min(25, cross_site * 3)
            score -= penalty
            items.append(ScoreItem(reason=f"{cross_site} cross-site trackers", penalty=penalty))

        fingerprinters = len(self._fingerprints.flagged_domains())
        if fingerprinters:
            penalty = min(20, fingerprinters * 5)
            score -= penalty
            items.append(ScoreItem(reason=f"{fingerprinters} fingerprinting attempts", penalty=penalty))

        tracker_count = len(self.trackers)
        if tracker_count > 5:
            penalty = min(20, tracker_count - 5)
            score -= penalty
            items.append(ScoreItem(reason=f"{tracker_count} unique trackers", penalty=penalty))

        high_risk = sum(1 for h in self.trackers.values() if h.risk_score >= HIGH_RISK_SCORE)
        if high_risk:
            penalty = min(15, high_risk * 5)
            score -= penalty
            items.append(ScoreItem(reason=f"{high_risk} high-risk trackers", penalty=penalty))

        blocked_share = self.blocked / max(1, self.blocked + self.allowed)
        if blocked_share > 0.5:
            bonus = min(10, round(blocked_share * 15))
            score += bonus
            items.append(ScoreItem(reason=f"{round(blocked_share * 100)}% requests blocked", penalty=-bonus))

        score = max(0, min(100, score))
        if score >= 80:
            grade, headline = "A", "Your privacy is well protected"
        elif score >= 60:
            grade, headline = "B", "Your privacy has some gaps"
        elif score >= 40:
            grade, headline = "C", "Your privacy needs attention"
        elif score >= 20:
            grade, headline = "D", "Your privacy is seriously compromised"
        else:
            grade, headline = "F", "Your privacy is seriously compromised"
        return PrivacyScoreBreakdown(score=score, grade=grade, deductions=items, headline=headline)

    def recommendations(self) -> list[Recommendation]:
        """At most five suggestions, most urgent first."""
        recs: list[Recommendation] = []
        site_count = max(1, len(self.sites))

        for entry in self.cross_site_tracking().trackers[:3]:
            if self.trackers[entry.tracker].enforcement_mode == "block":
                continue
            impact = min(95, round(entry.sites_tracked / site_count * 100))
            recs.append(
                Recommendation(
                    type="BLOCK_TRACKER",
                    priority="high",
                    domain=entry.tracker,
                    title=f"Block {entry.owner}",
                    description=(
                        f"{entry.owner} tracks you across {entry.sites_tracked} sites. "
                        f"Blocking {entry.tracker} reduces cross-site tracking by ~{impact}%"
                    ),
                    action={"type": "block", "domain": entry.tracker},
                )
            )

        critical = [t for t in self.fingerprinting_threats().threats if t.severity == "critical"]
        for threat in critical[:2]:
            ids = ", ".join(t.id for t in threat.techniques)
            recs.append(
                Recommendation(
                    type="BLOCK_FINGERPRINTER",
                    priority="critical",
                    domain=threat.domain,
                    title=f"Stop {threat.domain} from fingerprinting you",
                    description=(
                        f"This site uses {threat.technique_count} fingerprinting techniques ({ids}). "
                        "Block it to prevent device identification."
                    ),
                    action={"type": "block", "domain": threat.domain},
                )
            )

        companies = self.data_exposure().total_companies
        if companies > EXPOSURE_COMPANY_THRESHOLD:
            recs.append(
                Recommendation(
                    type="REDUCE_EXPOSURE",
                    priority="medium",
                    title="Reduce your data footprint",
                    description=(
                        f"{companies} companies have access to your browsing data. Consider blocking "
                        "advertising and session recording trackers to minimize exposure."
                    ),
                    action={"type": "bulk_block", "categories": ["Advertising", "Session Recording"]},
                )
            )

        for site in sorted(self.sites):
            if not self.sites[site]:
                recs.append(
                    Recommendation(
                        type="SAFE_SITE",
                        priority="info",
                        title=f"{site} is tracker-free",
                        description="No third-party trackers detected on this site. Your privacy is well protected here.",
                    )
                )
                break

        score = self.privacy_score().score
        if score < SCORE_NUDGE_THRESHOLD:
            unblocked = sum(1 for h in self.trackers.values() if h.enforcement_mode != "block")
            recs.append(
                Recommendation(
                    type="IMPROVE_SCORE",
                    priority="medium",
                    title=f"Your privacy score is {score}/100",
                    description=(
                        f"{unblocked} trackers are still allowed. Blocking the top 5 riskiest ones could "
                        f"improve your score by ~{min(30, unblocked * 2)} points."
                    ),
                    action={"type": "block_risky", "count": 5},
                )
            )

        # Stable sort keeps insertion order within a priority.
        recs.sort(key=lambda r: _PRIORITY_ORDER.get(r.priority, 3))
        return recs[:MAX_RECOMMENDATIONS]

    def summary(self, now: float | None = None) -> InsightsSummary:
        now = time.time() if now is None else now
        return InsightsSummary(
            total_trackers=len(self.trackers),
            total_sites_visited=len(self.sites),
            total_requests=self.blocked + self.allowed,
            blocked=self.blocked,
            allowed=self.allowed,
            session_duration=round(max(0.0, now - self.started_at) / 60),
            fingerprint_attempts=len(self._fingerprints.flagged_domains()),
            unique_companies=len({h.owner for h in self.trackers.values()}),
        )

    def generate(self) -> Insights:
        return Insights(
            cross_site_tracking=self.cross_site_tracking(),
            data_exposure=self.data_exposure(),
            fingerprinting_threats=self.fingerprinting_threats(),
            recommendations=self.recommendations(),
            privacy_score=self.privacy_score(),
            summary=self.summary(),
        )
