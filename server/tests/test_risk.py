"""Tests for tracksentry.analysis.risk: request scoring and frequency windows."""

from __future__ import annotations

import pytest

from tracksentry.analysis.risk import RiskEngine
from tracksentry.models.requests import TrackerIdentity


def _identity(domain: str, category: str = "Unknown", base_risk: int = 10) -> TrackerIdentity:
    return TrackerIdentity(domain=domain, category=category, base_risk=base_risk)  # type: ignore[arg-type]


class TestCalculateRisk:
    def test_known_ad_tracker_scores_for_block(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://ad.doubleclick.net/pixel")
        score = risk.calculate_risk(request, _identity("ad.doubleclick.net", "Advertising", 30), set())
        assert score >= 85

    def test_factors_are_itemised(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://ad.doubleclick.net/pixel", resource_type="xmlhttprequest")
        _, factors = risk.explain_risk(request, _identity("ad.doubleclick.net", "Advertising", 30), set())
        names = [f.factor for f in factors]
        assert names == ["base_risk", "category_risk", "known_high_risk_tracker", "cross_site_request", "programmatic_fetch"]

    def test_session_recording_penalty(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://script.hotjar.com/x.js")
        _, factors = risk.explain_risk(request, _identity("script.hotjar.com", "Session Recording", 45), set())
        assert {"factor": "session_recording", "points": 40} in [f.model_dump() for f in factors]

    def test_critical_domain_always_reduced(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://checkout.stripe.com/v3", resource_type="fetch")
        score = risk.calculate_risk(request, _identity("checkout.stripe.com", "Advertising", 100), set())
        assert score == 70

    def test_safe_domain_floors_at_zero(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://cdnjs.cloudflare.com/lib.js")
        assert risk.calculate_risk(request, _identity("cdnjs.cloudflare.com", "CDN", 5), set()) == 0

    def test_context_dampening(self, risk: RiskEngine, make_request) -> None:
        identity = _identity("api.partner.io")
        plain = risk.calculate_risk(make_request("https://api.partner.io/", session_id="a"), identity, set())
        dampened = risk.calculate_risk(make_request("https://api.partner.io/", session_id="b"), identity, {"login"})
        assert plain - dampened == 10

    def test_score_is_bounded(self, risk: RiskEngine, make_request) -> None:
        request = make_request("https://x.hotjar.com/", resource_type="beacon")
        score = risk.calculate_risk(request, _identity("x.hotjar.com", "Session Recording", 100), set())
        assert 0 <= score <= 100

    @pytest.mark.parametrize(
        ("score", "level"),
        [(85, "CRITICAL"), (84, "HIGH"), (60, "HIGH"), (59, "MEDIUM"), (30, "MEDIUM"), (29, "LOW")],
    )
    def test_risk_level(self, risk: RiskEngine, score: int, level: str) -> None:
        assert risk.risk_level(score) == level


class TestFrequency:
    def test_spike_adds_penalty(self, risk: RiskEngine, make_request) -> None:
        identity = _identity("api.partner.io")
        request = make_request("https://api.partner.io/")
        for _ in range(10):
            risk.explain_risk(request, identity, set(), now=100.0)
        _, factors = risk.explain_risk(request, identity, set(), now=100.0)
        assert "excessive_frequency" in [f.factor for f in factors]

    def test_window_expires(self, risk: RiskEngine) -> None:
        assert risk.get_request_frequency("s1", "a.com", now=0.0) == 1
        assert risk.get_request_frequency("s1", "a.com", now=1.0) == 2
        assert risk.get_request_frequency("s1", "a.com", now=6.0) == 1

    def test_request_count_does_not_record(self, risk: RiskEngine) -> None:
        risk.get_request_frequency("s1", "a.com", now=0.0)
        assert risk.request_count("s1", "a.com") == 1
        assert risk.request_count("s1", "a.com") == 1

    def test_windows_are_per_session(self, risk: RiskEngine) -> None:
        risk.get_request_frequency("s1", "a.com", now=0.0)
        assert risk.get_request_frequency("s2", "a.com", now=0.0) == 1

    def test_domain_stats(self, risk: RiskEngine) -> None:
        for _ in range(11):
            risk.get_request_frequency("s1", "a.com", now=50.0)
        stats = risk.get_domain_stats("s1", "a.com")
        assert stats == {"requestCount": 11, "firstSeen": 50.0, "isSpike": True}

    def test_clear_session_data(self, risk: RiskEngine) -> None:
        risk.get_request_frequency("s1", "a.com", now=0.0)
        risk.get_request_frequency("s1", "b.com", now=0.0)
        risk.get_request_frequency("s2", "a.com", now=0.0)
        assert risk.clear_session_data("s1") == 2
        assert risk.request_count("s1", "a.com") == 0
        assert risk.request_count("s2", "a.com") == 1
