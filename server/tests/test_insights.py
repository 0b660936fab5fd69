"""Tests for tracksentry.analysis.insights: cross-site, exposure and score reports."""

from __future__ import annotations

import pytest

from tracksentry.analysis.fingerprint import FingerprintDetector
from tracksentry.analysis.insights import InsightsEngine, infer_data_types
from tracksentry.capabilities.persistence import MemoryStore


@pytest.fixture()
def fingerprints(store: MemoryStore) -> FingerprintDetector:
    return FingerprintDetector(store)


@pytest.fixture()
def engine(fingerprints: FingerprintDetector) -> InsightsEngine:
    return InsightsEngine(fingerprints)


def _seed(engine: InsightsEngine) -> None:
    engine.record_tracker("doubleclick.net", "news.com", owner="Google", category="Advertising", risk_score=90)
    engine.record_tracker("doubleclick.net", "shop.com", owner="Google", category="Advertising", risk_score=80)
    engine.record_tracker("hotjar.com", "news.com", owner="Hotjar", category="Session Recording", risk_score=60)


class TestCrossSite:
    def test_only_multi_site_trackers(self, engine: InsightsEngine) -> None:
        _seed(engine)
        report = engine.cross_site_tracking()
        assert [t.tracker for t in report.trackers] == ["doubleclick.net"]
        assert report.trackers[0].sites_tracked == 2
        assert report.trackers[0].risk_score == 90
        assert report.headline == "1 tracker follows you across multiple sites"

    def test_grouped_by_company(self, engine: InsightsEngine) -> None:
        _seed(engine)
        engine.record_tracker("google-analytics.com", "blog.com", owner="Google", category="Analytics")
        engine.record_tracker("google-analytics.com", "news.com", owner="Google", category="Analytics")
        companies = engine.cross_site_tracking().companies
        assert len(companies) == 1
        assert companies[0].owner == "Google"
        assert companies[0].tracker_count == 2
        assert companies[0].site_count == 3

    def test_empty(self, engine: InsightsEngine) -> None:
        assert engine.cross_site_tracking().headline == "No cross-site tracking detected yet"


class TestDataExposure:
    def test_category_inference(self) -> None:
        assert "keystrokes" in infer_data_types("Session Recording")
        assert infer_data_types("Nonsense") == ("browsing history",)

    def test_shared_data_types(self, engine: InsightsEngine) -> None:
        _seed(engine)
        report = engine.data_exposure()
        assert report.total_companies == 2
        assert report.total_trackers == 2
        top = report.exposed_data_types[0]
        assert top.company_count == 1
        assert report.headline == "Your data is potentially shared with 2 companies"


class TestFingerprintThreats:
    def test_severity_tiers(self, engine: InsightsEngine, fingerprints: FingerprintDetector) -> None:
        for technique in ("canvas", "webgl", "audio"):
            fingerprints.flag_technique("a.com", technique)
        for technique in ("canvas", "fonts"):
            fingerprints.flag_technique("b.com", technique)
        fingerprints.flag_technique("c.com", "screen")

        report = engine.fingerprinting_threats()
        assert [(t.domain, t.severity) for t in report.threats] == [
            ("a.com", "critical"),
            ("b.com", "high"),
            ("c.com", "medium"),
        ]
        assert report.total_domains == 3


class TestPrivacyScore:
    def test_clean_history_is_grade_a(self, engine: InsightsEngine) -> None:
        score = engine.privacy_score()
        assert (score.score, score.grade) == (100, "A")

    def test_deductions(self, engine: InsightsEngine) -> None:
        _seed(engine)
        score = engine.privacy_score()
        # one cross-site tracker (-3), one high-risk tracker (-5)
        assert score.score == 92
        assert [d.penalty for d in score.deductions] == [3, 5]

    def test_blocking_bonus(self, engine: InsightsEngine) -> None:
        engine.record_tracker("a.com", "news.com", risk_score=10, enforcement_mode="block")
        score = engine.privacy_score()
        assert score.deductions[-1].penalty == -10
        assert score.score == 100


class TestRecommendations:
    def test_priority_order_and_cap(self, engine: InsightsEngine, fingerprints: FingerprintDetector) -> None:
        _seed(engine)
        engine.record_site_visit("quiet.org")
        for technique in ("canvas", "webgl", "audio"):
            fingerprints.flag_technique("fp.com", technique)

        recs = engine.recommendations()
        assert len(recs) <= 5
        assert recs[0].type == "BLOCK_FINGERPRINTER"
        assert [r.type for r in recs] == ["BLOCK_FINGERPRINTER", "BLOCK_TRACKER", "SAFE_SITE"]

    def test_blocked_tracker_not_recommended(self, engine: InsightsEngine) -> None:
        engine.record_tracker("x.com", "a.com", enforcement_mode="block")
        engine.record_tracker("x.com", "b.com", enforcement_mode="block")
        assert all(r.type != "BLOCK_TRACKER" for r in engine.recommendations())


class TestSummary:
    def test_counts(self, engine: InsightsEngine) -> None:
        _seed(engine)
        summary = engine.summary()
        assert summary.total_trackers == 2
        assert summary.total_sites_visited == 2
        assert summary.total_requests == 3
        assert summary.unique_companies == 2

    def test_reset(self, engine: InsightsEngine) -> None:
        _seed(engine)
        engine.reset()
        assert engine.generate().summary.total_trackers == 0
