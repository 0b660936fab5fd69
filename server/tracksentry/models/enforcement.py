"""Models for filter rules and enforcement outcomes."""

from __future__ import annotations

from typing import Literal

import pydantic

from tracksentry.models.base import CamelModel

RuleAction = Literal["block", "strip_cookies"]


class ActiveRule(CamelModel):
    """A rule as reported by the filtering capability."""

    rule_id: int
    domain_pattern: str
    action: RuleAction = "block"


class EnforcementOutcome(CamelModel):
    """What the enforcement engine did for one decision.

    ``confirmed`` is ``False`` when at least one action that
    needed the filtering capability failed; the requested mode
    was attempted but cannot be vouched for.
    """

    domain: str
    requested_mode: str
    effective_mode: str
    deferred: bool = False
    confirmed: bool = True
    rule_id: int | None = None
    applied_actions: list[str] = pydantic.Field(default_factory=list)
    failed_actions: list[str] = pydantic.Field(default_factory=list)
