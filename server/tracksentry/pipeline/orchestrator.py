"""
Request pipeline orchestrator.

Owns every engine as an explicitly constructed service and
drives each intercepted request through
context -> risk -> policy -> enforcement, then feeds the
pattern analyzer and insights engine.  Lifecycle:

- ``init()``: restore persisted state, reconcile filter rules,
  start the worker pool.  Nothing is accepted before this
  completes.
- serve: ``submit()`` queues requests on the key-sharded pool;
  ``process()`` runs one request inline.
- ``shutdown()``: drain, stop workers, cancel timers, save state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping

from tracksentry.analysis.context import ContextDetector, ContextSet
from tracksentry.analysis.fingerprint import FingerprintDetector
from tracksentry.analysis.insights import InsightsEngine
from tracksentry.analysis.knowledge import TrackerKnowledge
from tracksentry.analysis.patterns import PatternAnalyzer
from tracksentry.analysis.policy import PolicyEngine
from tracksentry.analysis.risk import RiskEngine
from tracksentry.capabilities.classifier import Classifier
from tracksentry.capabilities.filtering import FilterCapability
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.enforcement.engine import EnforcementEngine
from tracksentry.models.control import SessionStats, TrackerRecord
from tracksentry.models.fingerprint import ProbeEvent
from tracksentry.models.patterns import AnomalyAlert, TrackerEvent
from tracksentry.models.policy import PolicyConfig
from tracksentry.models.requests import InterceptedRequest, RequestVerdict, TrackerIdentity
from tracksentry.pipeline.workers import ShardedWorkerPool
from tracksentry.utils import errors, logger, url

log = logger.create_logger("Orchestrator")


class Orchestrator:
    """Wires the engines together and runs the per-request pipeline.

    Session tables (tracker records, request counts, last page
    URL) are keyed by session id and only mutated synchronously.
    """

    def __init__(
        self,
        policy: PolicyConfig,
        filter_capability: FilterCapability,
        store: KeyValueStore,
        classifier: Classifier | None = None,
        workers: int = 4,
        queue_size: int = 1000,
        deferred_grace_seconds: float = 3.0,
        tracker_database: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self.policy = policy
        self.deferred_grace_seconds = deferred_grace_seconds

        self.contexts = ContextDetector(policy)
        self.risk = RiskEngine(policy)
        self.policy_engine = PolicyEngine(policy, self.contexts, store)
        self.enforcement = EnforcementEngine(filter_capability, policy, store)
        self.knowledge = TrackerKnowledge(policy, classifier, store, tracker_database)
        self.fingerprints = FingerprintDetector(store)
        self.patterns = PatternAnalyzer(store)
        self.insights = InsightsEngine(self.fingerprints)

        self._pool: ShardedWorkerPool[InterceptedRequest, RequestVerdict] = ShardedWorkerPool(
            self.process, workers=workers, queue_size=queue_size
        )
        self._trackers: dict[str, dict[str, TrackerRecord]] = {}
        self._request_counts: dict[str, int] = {}
        self._page_urls: dict[str, str] = {}
        self.ready = False
        self._stopping = False

    # ── Lifecycle ───────────────────────────────────────────

    async def init(self) -> None:
        """Restore state and reconcile rules, then start accepting requests."""
        if self.ready:
            return
        log.start_timer("init")
        await self.knowledge.load_feedback()
        await self.fingerprints.load_state()
        await self.patterns.load_state()
        await self.enforcement.init()
        self._pool.start()
        self._stopping = False
        self.ready = True
        log.end_timer("init", "Pipeline ready")

    async def shutdown(self) -> None:
        """Drain queued requests, stop workers and persist state."""
        if not self.ready:
            return
        self._stopping = True
        await self._pool.join()
        await self._pool.stop()
        await self.enforcement.shutdown()
        await self.fingerprints.save_state()
        await self.patterns.save_state()
        self.ready = False
        log.info("Pipeline stopped")

    async def submit(self, request: InterceptedRequest) -> asyncio.Future[RequestVerdict]:
        """Queue a request behind earlier ones for the same session and domain.

        Raises:
            EngineNotReadyError: Before ``init()`` completes or during shutdown.
        """
        if not self.ready or self._stopping:
            raise errors.EngineNotReadyError("pipeline is not accepting requests")
        key = (request.session_id, url.extract_tracker_domain(request.url) or "")
        return await self._pool.submit(key, request)

    # ── Per-request pipeline ────────────────────────────────

    def _contexts_for(self, request: InterceptedRequest) -> ContextSet:
        return self.contexts.combine(
            self.contexts.get_session_context(request.session_id),
            self.contexts.detect_from_url(request.initiator_url),
        )

    async def process(self, request: InterceptedRequest) -> RequestVerdict:
        """Score, decide and enforce one request.

        Malformed URLs and first-party non-tracker requests are
        skipped.  Filter and persistence failures surface as
        ``confirmed=False``; they never raise out of here.
        """
        session_id = request.session_id
        self._request_counts[session_id] = self._request_counts.get(session_id, 0) + 1

        try:
            identity = self.knowledge.resolve(request.url)
        except errors.MalformedRequestError:
            log.debug("Skipping malformed request", {"url": request.url[:120]})
            return RequestVerdict(session_id=session_id, skipped=True, skip_reason="malformed_url")

        third_party = url.is_third_party(request.url, request.initiator_url)
        if not third_party and not self.knowledge.is_tracker(identity):
            return RequestVerdict(session_id=session_id, domain=identity.domain, skipped=True, skip_reason="first_party")

        domain = identity.domain
        contexts = self._contexts_for(request)

        score = self.risk.calculate_risk(request, identity, contexts, now=request.observed_at)
        fingerprint_score = self.fingerprints.get_risk_score(domain)
        if fingerprint_score:
            score = min(100, round(score + self.policy.fingerprint_blend * fingerprint_score))

        decision = self.policy_engine.decide(score, contexts, domain)
        frequency = self.risk.request_count(session_id, domain)
        mode = self.policy_engine.should_escalate_mode(decision.mode, frequency)
        base_mode = decision.base_mode
        source = "context" if decision.context_overridden else "score"

        override = await self.policy_engine.get_user_override(domain, session_id)
        if override is not None:
            base_mode = mode = override.mode
            source = "user"

        target = base_mode if PolicyEngine.should_defer_blocking(base_mode, contexts) else mode
        outcome = await self.enforcement.enforce(
            domain, target, session_id=session_id, contexts=contexts, release=source == "user"
        )

        self._record_tracker(session_id, identity, score, outcome.effective_mode, outcome.deferred, request.observed_at)
        alerts = await self._notify_observers(request, identity, score, outcome.effective_mode)

        if outcome.effective_mode in ("sandbox", "block") or not outcome.confirmed:
            log.info(
                "Enforced",
                {
                    "session": session_id,
                    "domain": domain,
                    "score": score,
                    "mode": outcome.effective_mode,
                    "deferred": outcome.deferred,
                    "confirmed": outcome.confirmed,
                },
            )

        return RequestVerdict(
            session_id=session_id,
            domain=domain,
            company=identity.company,
            category=identity.category,
            risk_score=score,
            fingerprint_score=fingerprint_score,
            contexts=sorted(contexts),
            base_mode=base_mode,
            mode=mode,
            effective_mode=outcome.effective_mode,
            override_source=source,  # type: ignore[arg-type]
            deferred=outcome.deferred,
            confirmed=outcome.confirmed,
            alerts=[a.type for a in alerts],
        )

    def _record_tracker(
        self, session_id: str, identity: TrackerIdentity, score: int, mode: str, deferred: bool, seen_at: float
    ) -> None:
        table = self._trackers.setdefault(session_id, {})
        record = table.get(identity.domain)
        if record is None:
            record = table[identity.domain] = TrackerRecord(
                domain=identity.domain,
                company=identity.company,
                category=identity.category,
                first_seen=seen_at,
            )
        record.risk_score = score
        record.mode = mode
        record.deferred = deferred
        record.request_count += 1
        record.last_seen = seen_at

    async def _notify_observers(
        self, request: InterceptedRequest, identity: TrackerIdentity, score: int, mode: str
    ) -> list[AnomalyAlert]:
        """Feed analytics; failures here never reach the enforcement path."""
        site_url = request.initiator_url or self._page_urls.get(request.session_id)
        site = url.extract_tracker_domain(site_url) if site_url else None

        alerts: list[AnomalyAlert] = []
        try:
            alerts = self.patterns.record_event(
                TrackerEvent(
                    session_id=request.session_id,
                    domain=identity.domain,
                    category=identity.category,
                    risk_score=score,
                    website_url=site_url,
                    timestamp=request.observed_at,
                )
            )
            if self.patterns.save_due:
                await self.patterns.save_state()
        except Exception as exc:
            log.error("Pattern analyzer failed", {"domain": identity.domain, "error": errors.get_error_message(exc)})

        try:
            self.insights.record_tracker(
                identity.domain,
                site or "unknown",
                owner=identity.company,
                category=identity.category,
                risk_score=score,
                enforcement_mode=mode,
            )
        except Exception as exc:
            log.error("Insights engine failed", {"domain": identity.domain, "error": errors.get_error_message(exc)})
        return alerts

    # ── Page layer events ───────────────────────────────────

    async def update_page_context(
        self, session_id: str, page_url: str, dom_signals: Mapping[str, Iterable[str]] | None = None
    ) -> ContextSet:
        """Recompute the session's contexts from the page URL and DOM signals.

        Entering (or staying in) a sensitive context cancels any
        pending activation; leaving it schedules the session's
        deferred blocks after the grace period.
        """
        contexts = self.contexts.detect(page_url, dom_signals)
        previous = self.contexts.set_session_context(session_id, contexts)

        if self._page_urls.get(session_id) != page_url:
            self._page_urls[session_id] = page_url
            site = self.patterns.record_site_visit(session_id, page_url)
            if site:
                self.insights.record_site_visit(site)

        if contexts:
            self.enforcement.cancel_deferred_activation(session_id)
        elif previous or self.enforcement.get_deferred_blocks(session_id):
            self.enforcement.schedule_deferred_activation(session_id, self.deferred_grace_seconds)

        if contexts != previous:
            log.info("Page context", {"session": session_id, "contexts": self.contexts.describe(contexts)})
        return contexts

    async def record_probe(self, event: ProbeEvent) -> bool:
        """Feed a fingerprinting probe; persists state when a technique is newly flagged."""
        flagged = self.fingerprints.analyze_event(event)
        if flagged:
            await self.fingerprints.save_state()
        return flagged

    async def close_session(self, session_id: str) -> dict[str, int]:
        """Tear down everything scoped to *session_id*.

        Domain-scoped state (rules, fingerprints, global
        overrides) survives.  Deferred blocks of the session are
        discarded rather than activated.
        """
        deferred = len(self.enforcement.get_deferred_blocks(session_id))
        self.enforcement.clear_session(session_id)
        windows = self.risk.clear_session_data(session_id)
        self.contexts.clear_session_context(session_id)
        trackers = len(self._trackers.pop(session_id, {}))
        self._request_counts.pop(session_id, None)
        self._page_urls.pop(session_id, None)
        self.patterns.end_session(session_id)

        overrides = 0
        try:
            overrides = await self.policy_engine.clear_session_overrides(session_id)
        except errors.CapabilityError as exc:
            log.error("Tab overrides not cleared", {"session": session_id, "error": str(exc)})

        log.info("Session closed", {"session": session_id, "trackers": trackers, "deferred": deferred})
        return {"trackers": trackers, "frequencyWindows": windows, "deferredBlocks": deferred, "overrides": overrides}

    # ── Session queries ─────────────────────────────────────

    def get_trackers(self, session_id: str) -> list[TrackerRecord]:
        table = self._trackers.get(session_id, {})
        return sorted(table.values(), key=lambda r: (-r.risk_score, r.domain))

    def get_session_stats(self, session_id: str) -> SessionStats:
        trackers = self._trackers.get(session_id, {}).values()
        by_mode: dict[str, int] = {}
        by_category: dict[str, int] = {}
        for record in trackers:
            by_mode[record.mode] = by_mode.get(record.mode, 0) + 1
            by_category[record.category] = by_category.get(record.category, 0) + 1
        contexts = self.contexts.get_session_context(session_id)
        return SessionStats(
            session_id=session_id,
            total_requests=self._request_counts.get(session_id, 0),
            tracker_count=len(self._trackers.get(session_id, {})),
            by_mode=by_mode,
            by_category=by_category,
            contexts=sorted(contexts),
            context_description=self.contexts.describe(contexts),
            deferred_blocks=sorted(self.enforcement.get_deferred_blocks(session_id)),
            privacy_score=self.patterns.get_privacy_score(session_id),
        )

    def sessions(self) -> list[str]:
        return sorted(set(self._trackers) | set(self._request_counts) | set(self._page_urls))
