"""Sensitive-flow context detection.

Classifies a page as being in a payment, checkout or login
flow from URL substrings and DOM signals reported by the page
layer.  Contexts soften enforcement so that aggressive
blocking never breaks these flows.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from tracksentry.models.policy import PolicyConfig
from tracksentry.utils import logger

log = logger.create_logger("Context")

ContextSet = frozenset[str]

EMPTY_CONTEXT: ContextSet = frozenset()


class ContextDetector:
    """Derives context sets and keeps the latest one per session.

    The session table is only mutated from synchronous code, so
    it needs no lock under the single event loop.
    """

    def __init__(self, policy: PolicyConfig) -> None:
        self._policy = policy
        self._sessions: dict[str, ContextSet] = {}

    # ── Detection ───────────────────────────────────────────

    def detect_from_url(self, url: str | None) -> ContextSet:
        """Context types whose configured substrings occur in *url*."""
        if not url:
            return EMPTY_CONTEXT
        url_lower = url.lower()
        return frozenset(
            context
            for context, patterns in self._policy.context_patterns.items()
            if any(p.lower() in url_lower for p in patterns if p)
        )

    def detect_from_dom(self, signals: Mapping[str, Iterable[str]] | None) -> ContextSet:
        """Context types whose signal category has at least one match."""
        if not signals:
            return EMPTY_CONTEXT
        return frozenset(context for context in self._policy.dom_signals if list(signals.get(context) or []))

    @staticmethod
    def combine(a: Iterable[str], b: Iterable[str]) -> ContextSet:
        return frozenset(a) | frozenset(b)

    def detect(self, url: str | None, signals: Mapping[str, Iterable[str]] | None = None) -> ContextSet:
        """Union of URL and DOM detection."""
        return self.combine(self.detect_from_url(url), self.detect_from_dom(signals))

    # ── Interpretation ──────────────────────────────────────

    def priority(self, contexts: Iterable[str]) -> int:
        """Highest configured priority among *contexts*, 0 if empty.

        Display only; never used to pick an override.
        """
        return max((self._policy.context_priorities.get(c, 0) for c in contexts), default=0)

    def apply_override(self, mode: str, contexts: Iterable[str]) -> str:
        """Soften *mode* through the override table when any context is active."""
        if not frozenset(contexts):
            return mode
        return self._policy.critical_context_overrides.get(mode, mode)

    def describe(self, contexts: Iterable[str]) -> str:
        """Human-readable labels, highest priority first."""
        ordered = sorted(frozenset(contexts), key=lambda c: (-self._policy.context_priorities.get(c, 0), c))
        if not ordered:
            return "No critical context detected"
        return ", ".join(self._policy.context_labels.get(c, c) for c in ordered)

    @staticmethod
    def requires_careful_handling(contexts: Iterable[str]) -> bool:
        ctx = frozenset(contexts)
        return "payment" in ctx or "checkout" in ctx

    # ── Per-session table ───────────────────────────────────

    def set_session_context(self, session_id: str, contexts: Iterable[str]) -> ContextSet:
        """Replace the session's contexts; returns the previous set."""
        previous = self._sessions.get(session_id, EMPTY_CONTEXT)
        current = frozenset(contexts)
        if current:
            self._sessions[session_id] = current
        else:
            self._sessions.pop(session_id, None)
        if current != previous:
            log.debug("Session context changed", {"session": session_id, "contexts": sorted(current)})
        return previous

    def get_session_context(self, session_id: str) -> ContextSet:
        return self._sessions.get(session_id, EMPTY_CONTEXT)

    def clear_session_context(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
