"""Traffic-filtering capability.

The engine never filters traffic itself; it asks the host to
install and remove rules.  Rule ids are proposed by the engine
so that allocation continues above the highest id already in
use after a restart.
"""

from __future__ import annotations

from typing import Protocol

from tracksentry.models.enforcement import ActiveRule, RuleAction
from tracksentry.utils import errors, logger

log = logger.create_logger("Filter")


def domain_pattern(domain: str) -> str:
    """Build the URL filter pattern that matches *domain* and its subdomains."""
    return f"*://*.{domain}/*"


class FilterCapability(Protocol):
    """Host-side rule installation contract."""

    async def install_block_rule(self, domain: str, rule_id: int) -> int:
        """Install a block rule; return the id it was stored under."""
        ...

    async def install_cookie_strip_rule(self, domain: str, rule_id: int) -> int:
        """Install a rule removing ``Set-Cookie`` for *domain*."""
        ...

    async def remove_rule(self, rule_id: int) -> None:
        """Remove a rule.  Raises :class:`RuleNotFoundError` if absent."""
        ...

    async def list_active_rules(self) -> list[ActiveRule]:
        """Return every rule currently installed."""
        ...


class MemoryFilter:
    """In-process filter that records rules in a dict.

    ``fail_installs`` / ``fail_removals`` make the next calls
    raise :class:`CapabilityError`, which lets tests exercise
    the engine's failure handling.
    """

    def __init__(self, rules: list[ActiveRule] | None = None) -> None:
        self.rules: dict[int, ActiveRule] = {r.rule_id: r for r in rules or []}
        self.install_calls = 0
        self.fail_installs = False
        self.fail_removals = False

    async def _install(self, domain: str, rule_id: int, action: RuleAction) -> int:
        self.install_calls += 1
        if self.fail_installs:
            raise errors.CapabilityError(f"install failed for {domain}")
        if rule_id in self.rules:
            raise errors.DuplicateRuleError(rule_id)
        self.rules[rule_id] = ActiveRule(rule_id=rule_id, domain_pattern=domain_pattern(domain), action=action)
        log.debug("Rule installed", {"ruleId": rule_id, "domain": domain, "action": action})
        return rule_id

    async def install_block_rule(self, domain: str, rule_id: int) -> int:
        return await self._install(domain, rule_id, "block")

    async def install_cookie_strip_rule(self, domain: str, rule_id: int) -> int:
        return await self._install(domain, rule_id, "strip_cookies")

    async def remove_rule(self, rule_id: int) -> None:
        if self.fail_removals:
            raise errors.CapabilityError(f"remove failed for rule {rule_id}")
        if rule_id not in self.rules:
            raise errors.RuleNotFoundError(rule_id)
        del self.rules[rule_id]

    async def list_active_rules(self) -> list[ActiveRule]:
        return sorted(self.rules.values(), key=lambda r: r.rule_id)

    def block_rules(self) -> list[ActiveRule]:
        """Installed block rules, in id order."""
        return [r for r in sorted(self.rules.values(), key=lambda r: r.rule_id) if r.action == "block"]
