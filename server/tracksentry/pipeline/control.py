"""
Control surface for the UI and telemetry layers.

Every operation returns a :class:`ControlResult`: the payload
on success, or ``success=False`` with an error message.  No
operation raises.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import pydantic

from tracksentry.models.control import (
    CategoryFeedback,
    ContextUpdate,
    ControlResult,
    OverrideRequest,
    SessionReport,
)
from tracksentry.models.fingerprint import ProbeEvent
from tracksentry.models.policy import OverrideScope
from tracksentry.models.requests import InterceptedRequest
from tracksentry.pipeline.orchestrator import Orchestrator
from tracksentry.utils import errors, logger
from tracksentry.utils.serialization import to_jsonable

log = logger.create_logger("Control")


def _dump(value: Any) -> Any:
    """Convert models (and containers of them) into camelCase JSON values."""
    if isinstance(value, pydantic.BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, dict):
        return {str(k): _dump(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_dump(v) for v in value]
    return to_jsonable(value)


class ControlSurface:
    """Thin, never-raising facade over the orchestrator."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator

    async def _guarded(self, operation: str, call: Callable[[], Awaitable[Any]]) -> ControlResult:
        try:
            data = await call()
        except Exception as exc:
            message = errors.get_error_message(exc)
            log.error(f"{operation} failed", {"error": message})
            return ControlResult(success=False, error=message)
        return ControlResult(success=True, data=_dump(data))

    # ── Ingestion ───────────────────────────────────────────

    async def submit_request(self, request: InterceptedRequest) -> ControlResult:
        async def _run() -> Any:
            future = await self._orchestrator.submit(request)
            return await future

        return await self._guarded("submit_request", _run)

    async def update_page_context(self, session_id: str, update: ContextUpdate) -> ControlResult:
        async def _run() -> Any:
            contexts = await self._orchestrator.update_page_context(session_id, update.page_url, update.dom_signals)
            return {
                "contexts": sorted(contexts),
                "description": self._orchestrator.contexts.describe(contexts),
                "deferredBlocks": sorted(self._orchestrator.enforcement.get_deferred_blocks(session_id)),
            }

        return await self._guarded("update_page_context", _run)

    async def record_probe(self, event: ProbeEvent) -> ControlResult:
        async def _run() -> Any:
            flagged = await self._orchestrator.record_probe(event)
            return {"flagged": flagged, "summary": self._orchestrator.fingerprints.get_summary(event.domain)}

        return await self._guarded("record_probe", _run)

    async def close_session(self, session_id: str) -> ControlResult:
        return await self._guarded("close_session", lambda: self._orchestrator.close_session(session_id))

    # ── Session queries ─────────────────────────────────────

    async def get_session_trackers(self, session_id: str) -> ControlResult:
        async def _run() -> Any:
            return self._orchestrator.get_trackers(session_id)

        return await self._guarded("get_session_trackers", _run)

    async def get_session_stats(self, session_id: str) -> ControlResult:
        async def _run() -> Any:
            return self._orchestrator.get_session_stats(session_id)

        return await self._guarded("get_session_stats", _run)

    # ── Overrides and manual enforcement ────────────────────

    async def set_user_override(self, request: OverrideRequest) -> ControlResult:
        """Persist the override and apply it to the filter straight away."""
        orchestrator = self._orchestrator

        async def _run() -> Any:
            override = await orchestrator.policy_engine.set_user_override(
                request.domain, request.mode, session_id=request.session_id, scope=request.scope
            )
            contexts = orchestrator.contexts.get_session_context(request.session_id) if request.session_id else frozenset()
            outcome = await orchestrator.enforcement.enforce(
                request.domain, request.mode, session_id=request.session_id, contexts=contexts, release=True
            )
            return {"override": override, "enforcement": outcome}

        return await self._guarded("set_user_override", _run)

    async def clear_user_override(
        self, domain: str, session_id: str | None = None, scope: OverrideScope = "tab"
    ) -> ControlResult:
        async def _run() -> Any:
            removed = await self._orchestrator.policy_engine.remove_user_override(domain, session_id, scope)
            return {"domain": domain, "removed": removed}

        return await self._guarded("clear_user_override", _run)

    async def force_block(self, domain: str) -> ControlResult:
        """Block *domain* now, ignoring any active context, and remember it globally."""
        orchestrator = self._orchestrator

        async def _run() -> Any:
            await orchestrator.policy_engine.set_user_override(domain, "block", scope="global")
            rule_id = await orchestrator.enforcement.block_request(domain)
            return {"domain": domain, "ruleId": rule_id}

        return await self._guarded("force_block", _run)

    async def force_unblock(self, domain: str) -> ControlResult:
        """Remove the block rule and allow *domain* globally from now on."""
        orchestrator = self._orchestrator

        async def _run() -> Any:
            await orchestrator.policy_engine.set_user_override(domain, "allow", scope="global")
            removed = await orchestrator.enforcement.unblock_request(domain)
            cookies_released = await orchestrator.enforcement.release_cookies(domain)
            return {"domain": domain, "removed": removed, "cookiesReleased": cookies_released}

        return await self._guarded("force_unblock", _run)

    # ── Reports ─────────────────────────────────────────────

    async def export_report(self, session_id: str) -> ControlResult:
        orchestrator = self._orchestrator

        async def _run() -> Any:
            rules = await orchestrator.enforcement.get_active_rules()
            return SessionReport(
                session_id=session_id,
                generated_at=time.time(),
                stats=orchestrator.get_session_stats(session_id),
                trackers=orchestrator.get_trackers(session_id),
                active_rules=[r.model_dump(by_alias=True) for r in rules],
                pattern_summary=_dump(orchestrator.patterns.get_session_summary(session_id)),
                insights=_dump(orchestrator.insights.generate()),
            )

        return await self._guarded("export_report", _run)

    async def get_insights(self) -> ControlResult:
        async def _run() -> Any:
            return self._orchestrator.insights.generate()

        return await self._guarded("get_insights", _run)

    async def get_pattern_summary(self, session_id: str) -> ControlResult:
        patterns = self._orchestrator.patterns

        async def _run() -> Any:
            return {
                "summary": patterns.get_session_summary(session_id),
                "insights": patterns.get_insights(session_id),
                "privacyScore": patterns.get_privacy_score(session_id),
                "baselines": {"trackerCount": patterns.tracker_count.stats(), "riskScore": patterns.risk_score.stats()},
            }

        return await self._guarded("get_pattern_summary", _run)

    async def get_fingerprint_data(self, domain: str | None = None) -> ControlResult:
        fingerprints = self._orchestrator.fingerprints

        async def _run() -> Any:
            if domain:
                return fingerprints.get_summary(domain)
            return [fingerprints.get_summary(d) for d in sorted(fingerprints.flagged_domains())]

        return await self._guarded("get_fingerprint_data", _run)

    # ── Feedback and housekeeping ───────────────────────────

    async def submit_category_feedback(self, feedback: CategoryFeedback) -> ControlResult:
        return await self._guarded(
            "submit_category_feedback", lambda: self._orchestrator.knowledge.submit_feedback(feedback)
        )

    async def clear_pattern_data(self) -> ControlResult:
        """Forget baselines, pattern history and the insights history."""
        orchestrator = self._orchestrator

        async def _run() -> Any:
            await orchestrator.patterns.clear_all_data()
            orchestrator.insights.reset()
            return {"cleared": True}

        return await self._guarded("clear_pattern_data", _run)

    async def clear_fingerprint_data(self, domain: str | None = None) -> ControlResult:
        fingerprints = self._orchestrator.fingerprints

        async def _run() -> Any:
            if domain:
                fingerprints.clear_domain(domain)
            else:
                fingerprints.clear_all()
            saved = await fingerprints.save_state(force=True)
            return {"cleared": domain or "all", "persisted": saved}

        return await self._guarded("clear_fingerprint_data", _run)
