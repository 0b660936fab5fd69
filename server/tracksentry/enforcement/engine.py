"""
Enforcement engine: turns decided modes into filter rules.

Keeps the domain to rule-id mappings for block and cookie-strip
rules, allocates rule ids above every id already installed,
and holds per-session sets of blocks that were deferred while a
sensitive context was active.

Locking: every install or removal for a domain runs under that
domain's lock from :class:`~tracksentry.utils.locks.KeyedLocks`.
Rule-id allocation and the deferred tables are only touched by
synchronous code between awaits.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from typing import Any

from tracksentry.analysis.policy import PolicyEngine
from tracksentry.capabilities.filtering import FilterCapability
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.models.enforcement import ActiveRule, EnforcementOutcome
from tracksentry.models.policy import PolicyConfig
from tracksentry.utils import errors, logger
from tracksentry.utils.locks import KeyedLocks

log = logger.create_logger("Enforcement")

_PATTERN_RE = re.compile(r"\*://\*\.(.+)/\*")

_NAMESPACE = "enforcement"
_STATE_KEY = "ruleMappings"

# Actions that need a cookie-strip rule from the filter capability.
_COOKIE_ACTIONS = frozenset({"strip_cookies", "block_cookies"})


def parse_domain_pattern(pattern: str) -> str | None:
    """Recover the domain from a ``*://*.<domain>/*`` pattern."""
    match = _PATTERN_RE.fullmatch(pattern)
    return match.group(1) if match else None


class EnforcementEngine:
    """Owns rule mappings, deferred blocks and their activation timers."""

    def __init__(
        self,
        filter_capability: FilterCapability,
        policy: PolicyConfig,
        store: KeyValueStore | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._filter = filter_capability
        self._policy = policy
        self._store = store
        self._locks = locks or KeyedLocks()

        self._block_rules: dict[str, int] = {}
        self._cookie_rules: dict[str, int] = {}
        self._next_id = 1

        self._deferred: dict[str, set[str]] = {}
        self._timers: dict[str, asyncio.Task[list[str]]] = {}
        self.ready = False

    # ── Startup and reconciliation ──────────────────────────

    async def init(self) -> int:
        """Rebuild mappings from the installed rules before serving.

        Returns the number of rules adopted.
        """
        saved_next = 1
        if self._store is not None:
            try:
                saved = await self._store.get(_NAMESPACE, _STATE_KEY)
            except errors.CapabilityError as exc:
                log.warn("Rule mapping hint unavailable", {"error": str(exc)})
                saved = None
            if isinstance(saved, dict):
                saved_next = int(saved.get("nextRuleId", 1))

        await self.resync()
        self._next_id = max(self._next_id, saved_next)
        self.ready = True
        adopted = len(self._block_rules) + len(self._cookie_rules)
        log.success("Enforcement reconciled", {"rules": adopted, "nextRuleId": self._next_id})
        return adopted

    async def resync(self) -> None:
        """Re-derive every mapping from ``list_active_rules()``.

        Unparseable patterns are ignored.  When two rules of the
        same kind target one domain the lowest id is kept and the
        others are removed, so no rule is ever orphaned.
        """
        rules = await self._filter.list_active_rules()
        block: dict[str, int] = {}
        cookie: dict[str, int] = {}
        extras: list[int] = []

        for rule in sorted(rules, key=lambda r: r.rule_id):
            domain = parse_domain_pattern(rule.domain_pattern)
            if domain is None:
                log.warn("Ignoring rule with unknown pattern", {"ruleId": rule.rule_id, "pattern": rule.domain_pattern})
                continue
            table = block if rule.action == "block" else cookie
            if domain in table:
                extras.append(rule.rule_id)
            else:
                table[domain] = rule.rule_id

        self._block_rules = block
        self._cookie_rules = cookie
        highest = max((r.rule_id for r in rules), default=0)
        self._next_id = max(self._next_id, highest + 1)

        for rule_id in extras:
            try:
                await self._filter.remove_rule(rule_id)
                log.warn("Removed duplicate rule", {"ruleId": rule_id})
            except errors.CapabilityError as exc:
                log.error("Failed to remove duplicate rule", {"ruleId": rule_id, "error": str(exc)})

    def _allocate_id(self) -> int:
        rule_id = self._next_id
        self._next_id += 1
        return rule_id

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(
                _NAMESPACE,
                _STATE_KEY,
                {"blockRules": dict(self._block_rules), "cookieRules": dict(self._cookie_rules), "nextRuleId": self._next_id},
            )
        except errors.CapabilityError as exc:
            log.warn("Rule mapping not persisted", {"error": str(exc)})

    # ── Rule primitives ─────────────────────────────────────

    async def _install(self, domain: str, cookie: bool) -> int:
        install = self._filter.install_cookie_strip_rule if cookie else self._filter.install_block_rule
        rule_id = self._allocate_id()
        try:
            installed = await install(domain, rule_id)
        except errors.DuplicateRuleError as exc:
            log.warn("Duplicate rule id, resyncing", {"domain": domain, "ruleId": exc.rule_id})
            await self.resync()
            existing = (self._cookie_rules if cookie else self._block_rules).get(domain)
            if existing is not None:
                return existing
            installed = await install(domain, self._allocate_id())
        # resync may have replaced the table object
        (self._cookie_rules if cookie else self._block_rules)[domain] = installed
        await self._persist()
        return installed

    async def block_request(self, domain: str) -> int:
        """Install a block rule for *domain* unless one exists; return its id.

        Raises:
            CapabilityError: If the filter capability refused the rule.
        """
        async with self._locks.hold(domain):
            existing = self._block_rules.get(domain)
            if existing is not None:
                return existing
            rule_id = await self._install(domain, cookie=False)
        log.info("Blocked", {"domain": domain, "ruleId": rule_id})
        return rule_id

    async def unblock_request(self, domain: str) -> bool:
        """Remove the block rule for *domain*; returns whether one was mapped.

        A rule the filter no longer knows about is treated as
        already removed and the mappings are re-derived.
        """
        async with self._locks.hold(domain):
            rule_id = self._block_rules.get(domain)
            if rule_id is None:
                return False
            try:
                await self._filter.remove_rule(rule_id)
            except errors.RuleNotFoundError:
                log.warn("Rule already gone, resyncing", {"domain": domain, "ruleId": rule_id})
                await self.resync()
            self._block_rules.pop(domain, None)
            await self._persist()
        log.info("Unblocked", {"domain": domain, "ruleId": rule_id})
        return True

    async def strip_cookies(self, domain: str) -> int:
        """Ensure a cookie-strip rule exists for *domain*; return its id."""
        async with self._locks.hold(domain):
            existing = self._cookie_rules.get(domain)
            if existing is not None:
                return existing
            return await self._install(domain, cookie=True)

    async def release_cookies(self, domain: str) -> bool:
        async with self._locks.hold(domain):
            rule_id = self._cookie_rules.get(domain)
            if rule_id is None:
                return False
            try:
                await self._filter.remove_rule(rule_id)
            except errors.RuleNotFoundError:
                log.warn("Cookie rule already gone, resyncing", {"domain": domain, "ruleId": rule_id})
                await self.resync()
            self._cookie_rules.pop(domain, None)
            await self._persist()
        log.info("Cookie rule released", {"domain": domain, "ruleId": rule_id})
        return True

    # ── Mode enforcement ────────────────────────────────────

    async def enforce(
        self,
        domain: str,
        mode: str,
        session_id: str | None = None,
        contexts: Iterable[str] = (),
        release: bool = False,
    ) -> EnforcementOutcome:
        """Apply *mode* to *domain*.

        A ``block`` while any context is active is never
        installed here: the domain joins the session's deferred
        set and the reported mode is ``sandbox``.  With
        *release*, an existing block rule is removed when the
        requested mode is weaker than ``block``; otherwise an
        existing block rule stays and is what gets reported.
        Filter failures are logged and reported as unconfirmed;
        they never raise.
        """
        effective = mode
        deferred = False
        if PolicyEngine.should_defer_blocking(mode, contexts):
            effective = "sandbox"
            if session_id is not None:
                self.defer_block(session_id, domain)
                deferred = True

        actions = self._policy.enforcement_actions.get(effective, [])
        applied: list[str] = []
        failed: list[str] = []
        rule_id: int | None = None

        for action in actions:
            try:
                if action == "block_request":
                    rule_id = await self.block_request(domain)
                elif action in _COOKIE_ACTIONS:
                    await self.strip_cookies(domain)
                applied.append(action)
            except errors.CapabilityError as exc:
                log.error("Enforcement action failed", {"domain": domain, "action": action, "error": str(exc)})
                failed.append(action)

        if effective != "block" and domain in self._block_rules:
            if release:
                try:
                    await self.unblock_request(domain)
                except errors.CapabilityError as exc:
                    log.error("Release failed", {"domain": domain, "error": str(exc)})
                    failed.append("unblock_request")
            else:
                effective = "block"
                rule_id = self._block_rules[domain]

        if release and domain in self._cookie_rules and not _COOKIE_ACTIONS.intersection(actions):
            try:
                await self.release_cookies(domain)
            except errors.CapabilityError as exc:
                log.error("Cookie release failed", {"domain": domain, "error": str(exc)})
                failed.append("release_cookies")

        if not deferred and session_id is not None and mode == "block" and domain in self._deferred.get(session_id, ()):
            self._deferred[session_id].discard(domain)

        return EnforcementOutcome(
            domain=domain,
            requested_mode=mode,
            effective_mode=effective,
            deferred=deferred,
            confirmed=not failed,
            rule_id=rule_id,
            applied_actions=applied,
            failed_actions=failed,
        )

    # ── Deferred blocking ───────────────────────────────────

    def defer_block(self, session_id: str, domain: str) -> None:
        pending = self._deferred.setdefault(session_id, set())
        if domain not in pending:
            pending.add(domain)
            log.info("Block deferred", {"session": session_id, "domain": domain})

    def get_deferred_blocks(self, session_id: str) -> frozenset[str]:
        return frozenset(self._deferred.get(session_id, ()))

    async def activate_deferred_blocks(self, session_id: str) -> list[str]:
        """Block every deferred domain of the session and empty its set.

        Returns the domains actually blocked; a domain whose
        rule could not be installed is logged and dropped.
        """
        pending = sorted(self._deferred.pop(session_id, set()))
        activated: list[str] = []
        for domain in pending:
            try:
                await self.block_request(domain)
                activated.append(domain)
            except errors.CapabilityError as exc:
                log.error("Deferred block failed", {"session": session_id, "domain": domain, "error": str(exc)})
        if pending:
            log.info("Deferred blocks activated", {"session": session_id, "count": len(activated)})
        return activated

    def schedule_deferred_activation(self, session_id: str, delay: float) -> asyncio.Task[list[str]] | None:
        """Activate the session's deferred blocks after *delay* seconds.

        Any earlier timer for the session is superseded.  Nothing
        is scheduled when the session has no deferred blocks.
        """
        self.cancel_deferred_activation(session_id)
        if not self._deferred.get(session_id):
            return None

        async def _activate_later() -> list[str]:
            await asyncio.sleep(delay)
            return await self.activate_deferred_blocks(session_id)

        task = asyncio.create_task(_activate_later(), name=f"deferred-blocks:{session_id}")
        self._timers[session_id] = task

        def _forget(done: asyncio.Task[list[str]]) -> None:
            if self._timers.get(session_id) is done:
                del self._timers[session_id]

        task.add_done_callback(_forget)
        log.debug("Deferred activation scheduled", {"session": session_id, "delay": delay})
        return task

    def cancel_deferred_activation(self, session_id: str) -> bool:
        task = self._timers.pop(session_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        log.debug("Deferred activation cancelled", {"session": session_id})
        return True

    def has_pending_activation(self, session_id: str) -> bool:
        task = self._timers.get(session_id)
        return task is not None and not task.done()

    # ── Teardown and queries ────────────────────────────────

    def clear_session(self, session_id: str) -> None:
        """Drop the session's deferred set and cancel its timer."""
        self.cancel_deferred_activation(session_id)
        dropped = self._deferred.pop(session_id, set())
        if dropped:
            log.debug("Deferred blocks discarded", {"session": session_id, "count": len(dropped)})

    async def clear_all_rules(self) -> int:
        """Remove every installed rule; returns how many were removed."""
        removed = 0
        for rule in await self._filter.list_active_rules():
            try:
                await self._filter.remove_rule(rule.rule_id)
                removed += 1
            except errors.RuleNotFoundError:
                continue
        self._block_rules = {}
        self._cookie_rules = {}
        await self._persist()
        log.info("All rules cleared", {"removed": removed})
        return removed

    async def get_active_rules(self) -> list[ActiveRule]:
        return await self._filter.list_active_rules()

    def is_blocked(self, domain: str) -> bool:
        return domain in self._block_rules

    def rule_for(self, domain: str) -> int | None:
        return self._block_rules.get(domain)

    def mappings(self) -> dict[str, Any]:
        return {"blockRules": dict(self._block_rules), "cookieRules": dict(self._cookie_rules), "nextRuleId": self._next_id}

    async def shutdown(self) -> None:
        """Cancel every pending activation timer."""
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
