"""Per-request risk scoring.

Builds a 0–100 score from independently configurable weights.
Penalties are summed and capped at 100 before any reduction is
applied, so a critical-list domain always ends at least
``critical_domain_reduction`` points below its undampened
score (floored at 0), however large the penalties are.

Frequency windows are keyed by ``(session, domain)`` and live
only as long as the session.
"""

from __future__ import annotations

import collections
import time
from collections.abc import Iterable
from typing import NamedTuple

from tracksentry.models.policy import PolicyConfig
from tracksentry.models.requests import PROGRAMMATIC_TYPES, InterceptedRequest, RiskFactor, TrackerIdentity
from tracksentry.utils import logger, url

log = logger.create_logger("RiskEngine")


class SessionDomainKey(NamedTuple):
    """Composite key for session-scoped per-destination state."""

    session_id: str
    domain: str


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


class RiskEngine:
    """Scores requests and tracks per-session request frequency.

    Locking: the frequency table is mutated only by synchronous
    methods, so the event loop serialises access and no await
    ever interleaves an update.
    """

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy
        self._windows: dict[SessionDomainKey, collections.deque[float]] = {}
        self._first_seen: dict[SessionDomainKey, float] = {}

    # ── Scoring ─────────────────────────────────────────────

    def explain_risk(
        self,
        request: InterceptedRequest,
        identity: TrackerIdentity,
        contexts: Iterable[str],
        now: float | None = None,
    ) -> tuple[int, list[RiskFactor]]:
        """Compute the score and the itemised factors behind it.

        Calling this records one observation in the request
        frequency window for ``(session, domain)``.
        """
        factors = self._policy.risk_factors
        items: list[RiskFactor] = []

        def add(name: str, points: int) -> None:
            if points:
                items.append(RiskFactor(factor=name, points=points))

        add("base_risk", identity.base_risk)
        add("category_risk", self.get_category_risk(identity.category))
        if self.is_high_risk_tracker(identity.domain):
            add("known_high_risk_tracker", factors.known_high_risk_tracker)
        if identity.category == "Session Recording":
            add("session_recording", factors.session_recording)
        if self.is_cross_site(request.url, request.initiator_url):
            add("cross_site_request", factors.cross_site_request)
        if request.resource_type.lower() in PROGRAMMATIC_TYPES:
            add("programmatic_fetch", factors.programmatic_fetch)

        frequency = self.get_request_frequency(request.session_id, identity.domain, now=now)
        if frequency > self._policy.spike_threshold.requests:
            add("excessive_frequency", factors.excessive_frequency)

        score = _clamp(sum(i.points for i in items))

        def reduce(name: str, points: int) -> None:
            nonlocal score
            reduced = max(0, score - points)
            if reduced != score:
                items.append(RiskFactor(factor=name, points=reduced - score))
            score = reduced

        if self.is_critical_domain(identity.domain):
            reduce("critical_domain", factors.critical_domain_reduction)
        if self.is_safe_domain(identity.domain):
            reduce("safe_domain", factors.safe_domain_reduction)
        if frozenset(contexts):
            reduce("sensitive_context", factors.context_dampening)

        return _clamp(score), items

    def calculate_risk(
        self,
        request: InterceptedRequest,
        identity: TrackerIdentity,
        contexts: Iterable[str],
        now: float | None = None,
    ) -> int:
        """Risk score in ``[0, 100]`` for one request."""
        score, _ = self.explain_risk(request, identity, contexts, now=now)
        return score

    def get_category_risk(self, category: str) -> int:
        """Category addend; missing categories contribute nothing."""
        return self._policy.category_risk_levels.get(category, 0)

    def is_high_risk_tracker(self, domain: str) -> bool:
        return url.matches_either_way(domain, self._policy.high_risk_trackers)

    def is_critical_domain(self, domain: str) -> bool:
        return url.matches_either_way(domain, self._policy.critical_domains)

    def is_safe_domain(self, domain: str) -> bool:
        return url.matches_suffix(domain, self._policy.safe_domains)

    @staticmethod
    def is_cross_site(request_url: str, initiator_url: str | None) -> bool:
        return url.is_third_party(request_url, initiator_url)

    def risk_level(self, score: int) -> str:
        thresholds = self._policy.thresholds
        if score >= thresholds.block_at:
            return "CRITICAL"
        if score >= thresholds.sandbox_at:
            return "HIGH"
        if score >= thresholds.restrict_at:
            return "MEDIUM"
        return "LOW"

    # ── Frequency windows ───────────────────────────────────

    def get_request_frequency(self, session_id: str, domain: str, now: float | None = None) -> int:
        """Record an observation and return the count inside the window."""
        key = SessionDomainKey(session_id, domain)
        now = time.time() if now is None else now
        window = self._policy.spike_threshold.window_seconds

        timestamps = self._windows.get(key)
        if timestamps is None:
            timestamps = self._windows[key] = collections.deque()
            self._first_seen[key] = now

        while timestamps and now - timestamps[0] >= window:
            timestamps.popleft()
        timestamps.append(now)
        return len(timestamps)

    def request_count(self, session_id: str, domain: str) -> int:
        """Requests currently inside the window, without recording one."""
        return len(self._windows.get(SessionDomainKey(session_id, domain), ()))

    def get_domain_stats(self, session_id: str, domain: str) -> dict[str, object]:
        key = SessionDomainKey(session_id, domain)
        count = self.request_count(session_id, domain)
        return {
            "requestCount": count,
            "firstSeen": self._first_seen.get(key),
            "isSpike": count > self._policy.spike_threshold.requests,
        }

    def clear_session_data(self, session_id: str) -> int:
        """Drop every frequency window owned by *session_id*."""
        stale = [key for key in self._windows if key.session_id == session_id]
        for key in stale:
            del self._windows[key]
            self._first_seen.pop(key, None)
        if stale:
            log.debug("Session frequency data cleared", {"session": session_id, "keys": len(stale)})
        return len(stale)
