"""
Browsing-pattern analysis and anomaly detection.

Learns what "normal" tracking looks like from rolling
baselines (session tracker count, per-event risk score and
one per category) and raises alerts when a new observation
sits too many standard deviations away.  Historical per-day,
per-hour, per-category and per-site aggregates feed the
insight messages and are persisted in the ``patterns``
namespace under a size budget.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from tracksentry.analysis.baseline import Baseline
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.models.patterns import (
    AnomalyAlert,
    PatternInsight,
    RiskBreakdown,
    SessionSummary,
    SiteComparison,
    TrackerEvent,
)
from tracksentry.utils import errors, logger, url

log = logger.create_logger("Patterns")

_NAMESPACE = "patterns"
_STATE_KEY = "patternAnalyzerState"

DEFAULT_ANOMALY_THRESHOLD = 2.0
DEFAULT_BASELINE_DAYS = 7
DEFAULT_MAX_SITES = 100
DEFAULT_MAX_STATE_BYTES = 5 * 1024 * 1024
DEFAULT_SAVE_EVERY = 50
_BASELINE_WINDOW = 100
_RECENT_ALERTS = 5


def _risk_tier(score: int) -> str:
    if score >= 85:
        return "critical"
    if score >= 60:
        return "high"
    if score >= 30:
        return "medium"
    return "low"


def _empty_history() -> dict[str, Any]:
    return {
        "dailyAverages": {},
        "categoryFrequency": {},
        "sitePatterns": {},
        "hourlyPatterns": [0] * 24,
    }


@dataclass
class _SessionState:
    """Events, visits and alerts for one live session."""

    started_at: float
    events: list[TrackerEvent] = field(default_factory=list)
    site_visits: list[str] = field(default_factory=list)
    alerts: list[AnomalyAlert] = field(default_factory=list)
    category_counts: dict[str, int] = field(default_factory=dict)


class PatternAnalyzer:
    """Global baselines plus per-session event tables.

    Every mutating method is synchronous; only loading, saving
    and clearing touch the persistence capability.
    """

    def __init__(
        self,
        store: KeyValueStore,
        anomaly_threshold: float = DEFAULT_ANOMALY_THRESHOLD,
        baseline_days: int = DEFAULT_BASELINE_DAYS,
        max_sites: int = DEFAULT_MAX_SITES,
        max_state_bytes: int = DEFAULT_MAX_STATE_BYTES,
        save_every: int = DEFAULT_SAVE_EVERY,
    ) -> None:
        self._store = store
        self.anomaly_threshold = anomaly_threshold
        self.baseline_days = baseline_days
        self.max_sites = max_sites
        self.max_state_bytes = max_state_bytes
        self.save_every = save_every

        self.tracker_count = Baseline(window=_BASELINE_WINDOW)
        self.risk_score = Baseline(window=_BASELINE_WINDOW)
        self.categories: dict[str, Baseline] = {}
        self.history: dict[str, Any] = _empty_history()

        self._sessions: dict[str, _SessionState] = {}
        self._unsaved_events = 0

    # ── Recording ───────────────────────────────────────────

    def _session(self, session_id: str, now: float | None = None) -> _SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = self._sessions[session_id] = _SessionState(started_at=time.time() if now is None else now)
        return state

    def record_event(self, event: TrackerEvent) -> list[AnomalyAlert]:
        """Fold one tracker observation in and return any anomaly alerts.

        Each baseline is updated before it is consulted, so the
        value is scored against a window that already contains it.
        """
        session = self._session(event.session_id, event.timestamp)
        session.events.append(event)
        session.category_counts[event.category] = session.category_counts.get(event.category, 0) + 1

        total = len(session.events)
        category_total = session.category_counts[event.category]

        self.tracker_count.add(total)
        self.risk_score.add(event.risk_score)
        category_baseline = self.categories.setdefault(event.category, Baseline(window=_BASELINE_WINDOW))
        category_baseline.add(category_total)

        self._update_history(event)
        self._unsaved_events += 1

        alerts: list[AnomalyAlert] = []
        count_score = self.tracker_count.anomaly_score(total)
        if count_score > self.anomaly_threshold:
            alerts.append(
                AnomalyAlert(
                    type="high_tracker_count",
                    severity="warning",
                    message=f"Unusual number of trackers detected ({_display_ratio(count_score)}x normal)",
                    score=count_score,
                    domain=event.domain,
                    timestamp=event.timestamp,
                )
            )

        risk_score = self.risk_score.anomaly_score(event.risk_score)
        if risk_score > self.anomaly_threshold:
            alerts.append(
                AnomalyAlert(
                    type="high_risk_tracker",
                    severity="alert",
                    message=f"Unusually high-risk tracker detected (risk score: {event.risk_score})",
                    score=risk_score,
                    domain=event.domain,
                    timestamp=event.timestamp,
                )
            )

        category_score = category_baseline.anomaly_score(category_total)
        if category_score > self.anomaly_threshold:
            alerts.append(
                AnomalyAlert(
                    type="category_spike",
                    severity="info",
                    message=f"Unusual spike in {event.category} trackers",
                    score=category_score,
                    domain=event.domain,
                    category=event.category,
                    timestamp=event.timestamp,
                )
            )

        if alerts:
            session.alerts.extend(alerts)
            log.info(
                "Anomalies detected",
                {"session": event.session_id, "domain": event.domain, "types": [a.type for a in alerts]},
            )
        return alerts

    def _update_history(self, event: TrackerEvent) -> None:
        moment = datetime.fromtimestamp(event.timestamp)
        day = moment.strftime("%Y-%m-%d")

        daily = self.history["dailyAverages"].setdefault(day, {"trackerCount": 0, "avgRiskScore": 0.0, "categories": {}})
        previous = daily["trackerCount"]
        daily["trackerCount"] = previous + 1
        daily["avgRiskScore"] = (daily["avgRiskScore"] * previous + event.risk_score) / daily["trackerCount"]
        daily["categories"][event.category] = daily["categories"].get(event.category, 0) + 1

        frequency = self.history["categoryFrequency"]
        frequency[event.category] = frequency.get(event.category, 0) + 1
        self.history["hourlyPatterns"][moment.hour] += 1

    def record_site_visit(self, session_id: str, page_url: str, now: float | None = None) -> str | None:
        """Count a first-party visit; returns the site host or ``None`` for bad URLs."""
        site = url.extract_tracker_domain(page_url)
        if not site:
            return None
        now = time.time() if now is None else now
        self._session(session_id, now).site_visits.append(site)
        pattern = self.history["sitePatterns"].setdefault(
            site, {"visitCount": 0, "avgTrackers": 0.0, "sessionCount": 0, "lastVisit": None}
        )
        pattern["visitCount"] += 1
        pattern["lastVisit"] = now
        return site

    @property
    def save_due(self) -> bool:
        """Whether enough events arrived since the last save."""
        return self._unsaved_events >= self.save_every

    # ── Queries ─────────────────────────────────────────────

    def get_session_summary(self, session_id: str, now: float | None = None) -> SessionSummary:
        state = self._sessions.get(session_id)
        if state is None:
            return SessionSummary(session_id=session_id)

        now = time.time() if now is None else now
        events = state.events
        tiers = RiskBreakdown()
        for event in events:
            tier = _risk_tier(event.risk_score)
            setattr(tiers, tier, getattr(tiers, tier) + 1)

        avg = sum(e.risk_score for e in events) / len(events) if events else 0
        return SessionSummary(
            session_id=session_id,
            duration_minutes=round(max(0.0, now - state.started_at) / 60),
            total_trackers=len(events),
            unique_trackers=len({e.domain for e in events}),
            avg_risk_score=round(avg),
            category_breakdown=dict(state.category_counts),
            risk_breakdown=tiers,
            alert_count=len(state.alerts),
            recent_alerts=state.alerts[-_RECENT_ALERTS:],
        )

    def get_privacy_score(self, session_id: str) -> int:
        """Simple 0-100 session score, higher is better."""
        summary = self.get_session_summary(session_id)
        score = 100.0
        score -= min(30.0, summary.total_trackers * 0.5)
        score -= summary.risk_breakdown.high * 5
        score -= summary.risk_breakdown.critical * 10
        score -= summary.alert_count * 3
        return max(0, min(100, round(score)))

    def get_insights(self, session_id: str | None = None) -> list[PatternInsight]:
        insights: list[PatternInsight] = []

        stats = self.tracker_count.stats()
        state = self._sessions.get(session_id) if session_id else None
        if state is not None and stats.data_points >= 10 and stats.mean > 0:
            change = round((len(state.events) - stats.mean) / stats.mean * 100)
            if abs(change) > 20:
                insights.append(
                    PatternInsight(
                        type="increase" if change > 0 else "decrease",
                        message=f"{abs(change)}% {'more' if change > 0 else 'fewer'} trackers than your usual browsing",
                    )
                )

        frequency: dict[str, int] = self.history["categoryFrequency"]
        if frequency:
            top, count = max(sorted(frequency.items()), key=lambda item: item[1])
            insights.append(
                PatternInsight(type="category", message=f"{top} trackers are most common in your browsing ({count} detected)")
            )

        hourly: list[int] = self.history["hourlyPatterns"]
        peak = max(hourly)
        if peak > 0:
            insights.append(
                PatternInsight(type="time", message=f"You encounter the most trackers around {hourly.index(peak)}:00")
            )
        return insights

    def compare_site_to_baseline(self, session_id: str, page_url: str) -> SiteComparison:
        site = url.extract_tracker_domain(page_url)
        pattern = self.history["sitePatterns"].get(site) if site else None
        if not pattern or pattern["visitCount"] < 3:
            return SiteComparison()

        state = self._sessions.get(session_id)
        current = 0
        if state is not None:
            current = sum(1 for e in state.events if e.website_url and url.extract_tracker_domain(e.website_url) == site)

        avg = float(pattern.get("avgTrackers", 0.0))
        return SiteComparison(
            has_baseline=True,
            current_trackers=current,
            avg_trackers=avg,
            visit_count=pattern["visitCount"],
            is_unusual=current > avg * 1.5,
        )

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    # ── Session lifecycle ───────────────────────────────────

    def end_session(self, session_id: str) -> SessionSummary | None:
        """Fold the session into per-site averages and forget it."""
        state = self._sessions.get(session_id)
        if state is None:
            return None
        summary = self.get_session_summary(session_id)

        per_site: dict[str, int] = {}
        for event in state.events:
            site = url.extract_tracker_domain(event.website_url) if event.website_url else None
            if site:
                per_site[site] = per_site.get(site, 0) + 1

        for site in sorted(set(state.site_visits)):
            pattern = self.history["sitePatterns"].get(site)
            if pattern is None:
                continue
            sessions = pattern.get("sessionCount", 0)
            pattern["avgTrackers"] = (pattern.get("avgTrackers", 0.0) * sessions + per_site.get(site, 0)) / (sessions + 1)
            pattern["sessionCount"] = sessions + 1

        del self._sessions[session_id]
        log.debug("Pattern session ended", {"session": session_id, "events": summary.total_trackers})
        return summary

    # ── Pruning ─────────────────────────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "historicalPatterns": self.history,
            "trackerCountState": self.tracker_count.export_state(),
            "riskScoreState": self.risk_score.export_state(),
            "categoryStates": {c: b.export_state() for c, b in sorted(self.categories.items())},
        }

    def state_size(self) -> int:
        return len(json.dumps(self.export_state()))

    def prune(self, now: float | None = None) -> int:
        """Shrink historical data until the serialised state fits the budget.

        Days older than the retention window go first, then sites
        beyond ``max_sites`` (fewest visits first).  If that is not
        enough, the oldest remaining day and then the least-visited
        remaining site are dropped one at a time.  Ties break on
        name, so the same state always prunes the same way.
        Returns the number of entries removed.
        """
        now = time.time() if now is None else now
        daily: dict[str, Any] = self.history["dailyAverages"]
        sites: dict[str, Any] = self.history["sitePatterns"]
        removed = 0

        cutoff = (datetime.fromtimestamp(now) - timedelta(days=self.baseline_days)).strftime("%Y-%m-%d")
        for day in sorted(daily):
            if day < cutoff:
                del daily[day]
                removed += 1

        if len(sites) > self.max_sites:
            for site in self._sites_by_relevance()[: len(sites) - self.max_sites]:
                del sites[site]
                removed += 1

        while self.state_size() > self.max_state_bytes:
            if daily:
                del daily[min(daily)]
            elif sites:
                del sites[self._sites_by_relevance()[0]]
            else:
                break
            removed += 1

        if removed:
            log.warn("Pattern history pruned", {"removed": removed, "bytes": self.state_size()})
        return removed

    def _sites_by_relevance(self) -> list[str]:
        """Site keys, least relevant first."""
        sites = self.history["sitePatterns"]
        return sorted(sites, key=lambda s: (sites[s]["visitCount"], sites[s].get("lastVisit") or 0, s))

    # ── Persistence ─────────────────────────────────────────

    async def load_state(self) -> None:
        try:
            saved = await self._store.get(_NAMESPACE, _STATE_KEY)
        except errors.CapabilityError as exc:
            log.error("Pattern state load failed", {"error": str(exc)})
            return
        if not saved:
            return

        history = _empty_history()
        history.update(saved.get("historicalPatterns") or {})
        if len(history["hourlyPatterns"]) != 24:
            history["hourlyPatterns"] = [0] * 24
        self.history = history
        self.tracker_count.load_state(saved.get("trackerCountState"))
        self.risk_score.load_state(saved.get("riskScoreState"))
        for category, state in (saved.get("categoryStates") or {}).items():
            baseline = Baseline(window=_BASELINE_WINDOW)
            baseline.load_state(state)
            self.categories[category] = baseline
        log.info("Pattern state restored", {"days": len(history["dailyAverages"]), "sites": len(history["sitePatterns"])})

    async def save_state(self, now: float | None = None) -> bool:
        """Prune if over budget, then persist; returns whether the write succeeded."""
        if self.state_size() > self.max_state_bytes:
            self.prune(now)
        state = self.export_state()
        state["lastSaved"] = time.time() if now is None else now
        try:
            await self._store.set(_NAMESPACE, _STATE_KEY, state)
        except errors.CapabilityError as exc:
            log.error("Pattern state save failed", {"error": str(exc)})
            return False
        self._unsaved_events = 0
        return True

    async def clear_all_data(self) -> None:
        """Forget every baseline, aggregate and live session."""
        self.tracker_count.reset()
        self.risk_score.reset()
        self.categories.clear()
        self.history = _empty_history()
        self._sessions.clear()
        self._unsaved_events = 0
        await self._store.delete(_NAMESPACE, _STATE_KEY)
        log.info("Pattern data cleared")


def _display_ratio(score: float) -> str:
    return "many" if math.isinf(score) else str(round(score))
