"""Policy configuration and decision models.

``PolicyConfig`` holds every tunable used by the context
detector, risk engine, policy engine and enforcement engine.
Defaults live here; a JSON policy file may override any
subset of them (see :mod:`tracksentry.data.loader`).
"""

from __future__ import annotations

from typing import Literal

import pydantic

from tracksentry.models.base import CamelModel

EnforcementMode = Literal["allow", "restrict", "sandbox", "block"]
ContextType = Literal["payment", "checkout", "login"]
OverrideScope = Literal["tab", "global"]

ENFORCEMENT_MODES: tuple[str, ...] = ("allow", "restrict", "sandbox", "block")


class Thresholds(CamelModel):
    """Ascending score thresholds for each enforcement mode."""

    restrict_at: int = 30
    sandbox_at: int = 60
    block_at: int = 85

    @pydantic.model_validator(mode="after")
    def _check_order(self) -> Thresholds:
        if not self.restrict_at <= self.sandbox_at <= self.block_at:
            raise ValueError("thresholds must be ascending: restrict_at <= sandbox_at <= block_at")
        return self


class RiskFactors(CamelModel):
    """Flat penalties and reductions applied by the risk engine."""

    known_high_risk_tracker: int = 35
    session_recording: int = 40
    cross_site_request: int = 15
    programmatic_fetch: int = 10
    excessive_frequency: int = 15
    critical_domain_reduction: int = 30
    safe_domain_reduction: int = 20
    context_dampening: int = 10


class SpikeThreshold(CamelModel):
    """Request-frequency spike detection window."""

    requests: int = 10
    window_seconds: float = 5.0


class PolicyConfig(CamelModel):
    """All policy tunables with their shipped defaults."""

    thresholds: Thresholds = pydantic.Field(default_factory=Thresholds)
    risk_factors: RiskFactors = pydantic.Field(default_factory=RiskFactors)
    spike_threshold: SpikeThreshold = pydantic.Field(default_factory=SpikeThreshold)

    category_base_risk: dict[str, int] = pydantic.Field(
        default_factory=lambda: {
            "Advertising": 30,
            "Analytics": 15,
            "Session Recording": 45,
            "Social": 25,
            "Tag Manager": 20,
            "Payment": 5,
            "Security": 10,
            "CDN": 5,
            "Unknown": 10,
        }
    )
    category_risk_levels: dict[str, int] = pydantic.Field(
        default_factory=lambda: {
            "Advertising": 20,
            "Analytics": 10,
            "Session Recording": 25,
            "Social": 15,
            "Tag Manager": 10,
            "Unknown": 5,
        }
    )

    high_risk_trackers: list[str] = pydantic.Field(
        default_factory=lambda: [
            "doubleclick.net",
            "hotjar.com",
            "facebook.net",
            "fullstory.com",
            "mouseflow.com",
            "criteo.com",
            "taboola.com",
        ]
    )
    critical_domains: list[str] = pydantic.Field(
        default_factory=lambda: [
            "stripe.com",
            "stripe.network",
            "paypal.com",
            "braintreegateway.com",
            "adyen.com",
            "recaptcha.net",
            "hcaptcha.com",
            "okta.com",
            "auth0.com",
        ]
    )
    safe_domains: list[str] = pydantic.Field(
        default_factory=lambda: [
            "cloudflare.com",
            "cdnjs.cloudflare.com",
            "gstatic.com",
            "googleapis.com",
            "jsdelivr.net",
            "fastly.net",
            "akamaihd.net",
        ]
    )

    context_patterns: dict[str, list[str]] = pydantic.Field(
        default_factory=lambda: {
            "payment": ["payment", "/pay/", "billing", "/card"],
            "checkout": ["checkout", "/cart", "/basket", "/order"],
            "login": ["login", "signin", "sign-in", "/auth", "/sso"],
        }
    )
    dom_signals: dict[str, list[str]] = pydantic.Field(
        default_factory=lambda: {
            "payment": ["input[autocomplete='cc-number']", "iframe[src*='stripe']", "[data-payment]"],
            "checkout": ["form[action*='checkout']", "[data-checkout]", "button.place-order"],
            "login": ["input[type='password']", "form[action*='login']"],
        }
    )
    context_priorities: dict[str, int] = pydantic.Field(
        default_factory=lambda: {"payment": 3, "checkout": 2, "login": 1}
    )
    context_labels: dict[str, str] = pydantic.Field(
        default_factory=lambda: {
            "payment": "Payment Processing",
            "checkout": "Checkout Flow",
            "login": "Login/Authentication",
        }
    )
    critical_context_overrides: dict[str, EnforcementMode] = pydantic.Field(
        default_factory=lambda: {"block": "sandbox"}
    )

    enforcement_actions: dict[str, list[str]] = pydantic.Field(
        default_factory=lambda: {
            "allow": [],
            "restrict": ["strip_cookies", "limit_headers"],
            "sandbox": ["block_cookies", "block_storage"],
            "block": ["block_request"],
        }
    )

    # Weight applied to the fingerprint detector's score when it is
    # blended into the request risk score.
    fingerprint_blend: float = 0.5
    # Minimum classifier confidence accepted for a domain the
    # static lookup does not know.
    classifier_min_confidence: float = 0.5


class UserOverride(CamelModel):
    """A user-forced enforcement mode for a domain."""

    domain: str
    mode: EnforcementMode
    scope: OverrideScope = "tab"
    session_id: str | None = None
    timestamp: float


class PolicyDecision(CamelModel):
    """Score-derived mode before and after the context override."""

    base_mode: EnforcementMode
    mode: EnforcementMode
    context_overridden: bool = False
