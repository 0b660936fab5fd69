"""Enforcement-mode resolution and user overrides.

Turns a risk score plus the active contexts into one of
``allow``, ``restrict``, ``sandbox`` or ``block``.  User
overrides are persisted as one record in the ``overrides``
namespace: tab-scoped entries are keyed ``"<session>:<domain>"``,
global entries by the bare domain.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from typing import Any

from tracksentry.analysis.context import ContextDetector
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.models.policy import EnforcementMode, OverrideScope, PolicyConfig, PolicyDecision, UserOverride
from tracksentry.utils import errors, logger

log = logger.create_logger("PolicyEngine")

_NAMESPACE = "overrides"
_RECORD_KEY = "userOverrides"


def _override_key(domain: str, session_id: str | None, scope: OverrideScope) -> str:
    return domain if scope == "global" else f"{session_id}:{domain}"


class PolicyEngine:
    """Maps scores to modes and manages persisted user overrides.

    All override writes are read-modify-write cycles on a single
    record, serialised by one lock so concurrent updates from
    different sessions are never lost.
    """

    def __init__(self, policy: PolicyConfig, context_detector: ContextDetector, store: KeyValueStore) -> None:
        self._policy = policy
        self._contexts = context_detector
        self._store = store
        self._lock = asyncio.Lock()

    # ── Mode resolution ─────────────────────────────────────

    def score_to_mode(self, score: int) -> EnforcementMode:
        thresholds = self._policy.thresholds
        if score >= thresholds.block_at:
            return "block"
        if score >= thresholds.sandbox_at:
            return "sandbox"
        if score >= thresholds.restrict_at:
            return "restrict"
        return "allow"

    def decide(self, score: int, contexts: Iterable[str], domain: str) -> PolicyDecision:
        """Resolve the mode, keeping the pre-override mode alongside it."""
        base = self.score_to_mode(score)
        mode = self._contexts.apply_override(base, contexts)
        if mode != base:
            log.info("Context override", {"domain": domain, "from": base, "to": mode})
        return PolicyDecision(base_mode=base, mode=mode, context_overridden=mode != base)  # type: ignore[arg-type]

    def determine_mode(self, score: int, contexts: Iterable[str], domain: str) -> EnforcementMode:
        return self.decide(score, contexts, domain).mode

    def get_enforcement_actions(self, mode: str) -> list[str]:
        return list(self._policy.enforcement_actions.get(mode, []))

    def should_escalate_mode(self, mode: EnforcementMode, frequency: int) -> EnforcementMode:
        """Escalate lenient modes for destinations that spike."""
        spike = self._policy.spike_threshold.requests
        if mode == "allow" and frequency > spike:
            return "restrict"
        if mode == "restrict" and frequency > spike * 2:
            return "sandbox"
        return mode

    @staticmethod
    def should_defer_blocking(mode: str, contexts: Iterable[str]) -> bool:
        """The one rule linking policy to deferred enforcement."""
        return mode == "block" and bool(frozenset(contexts))

    # ── User overrides ──────────────────────────────────────

    async def _load(self) -> dict[str, Any]:
        record = await self._store.get(_NAMESPACE, _RECORD_KEY)
        return record if isinstance(record, dict) else {}

    async def get_user_override(self, domain: str, session_id: str | None) -> UserOverride | None:
        """Tab-scoped override first, then global; ``None`` if neither.

        Persistence failures are logged and treated as "no override".
        """
        try:
            overrides = await self._load()
        except errors.CapabilityError as exc:
            log.error("Error getting user override", {"domain": domain, "error": str(exc)})
            return None

        for key in (f"{session_id}:{domain}", domain):
            entry = overrides.get(key)
            if entry:
                try:
                    return UserOverride.model_validate(entry)
                except ValueError:
                    log.warn("Discarding malformed override", {"key": key})
        return None

    async def set_user_override(
        self,
        domain: str,
        mode: EnforcementMode,
        session_id: str | None = None,
        scope: OverrideScope = "tab",
    ) -> UserOverride:
        if scope == "tab" and not session_id:
            raise ValueError("tab-scoped overrides need a session id")
        override = UserOverride(domain=domain, mode=mode, scope=scope, session_id=session_id, timestamp=time.time())
        async with self._lock:
            overrides = await self._load()
            overrides[_override_key(domain, session_id, scope)] = override.model_dump()
            await self._store.set(_NAMESPACE, _RECORD_KEY, overrides)
        log.info("User override saved", {"domain": domain, "mode": mode, "scope": scope})
        return override

    async def remove_user_override(self, domain: str, session_id: str | None = None, scope: OverrideScope = "tab") -> bool:
        """Delete an override; returns whether one existed."""
        async with self._lock:
            overrides = await self._load()
            existed = overrides.pop(_override_key(domain, session_id, scope), None) is not None
            if existed:
                await self._store.set(_NAMESPACE, _RECORD_KEY, overrides)
        log.info("User override removed", {"domain": domain, "scope": scope, "existed": existed})
        return existed

    async def get_all_overrides(self) -> dict[str, UserOverride]:
        overrides = await self._load()
        return {key: UserOverride.model_validate(value) for key, value in overrides.items()}

    async def clear_session_overrides(self, session_id: str) -> int:
        """Remove every tab-scoped override belonging to a closing session."""
        prefix = f"{session_id}:"
        async with self._lock:
            overrides = await self._load()
            stale = [key for key in overrides if key.startswith(prefix)]
            for key in stale:
                del overrides[key]
            if stale:
                await self._store.set(_NAMESPACE, _RECORD_KEY, overrides)
        if stale:
            log.info("Tab overrides cleared", {"session": session_id, "removed": len(stale)})
        return len(stale)
