"""Tests for tracksentry.analysis.patterns: baselines, alerts and history."""

from __future__ import annotations

import pytest

from tracksentry.analysis.patterns import PatternAnalyzer
from tracksentry.capabilities.persistence import MemoryStore
from tracksentry.models.patterns import TrackerEvent

NOW = 1_700_000_000.0


@pytest.fixture()
def analyzer(store: MemoryStore) -> PatternAnalyzer:
    return PatternAnalyzer(store)


def _event(session_id: str, risk_score: int = 10, category: str = "Analytics", **kwargs: object) -> TrackerEvent:
    options: dict[str, object] = {"domain": "t.com", "timestamp": NOW}
    options.update(kwargs)
    return TrackerEvent(session_id=session_id, category=category, risk_score=risk_score, **options)  # type: ignore[arg-type]


class TestAnomalies:
    def test_no_alert_below_min_points(self, analyzer: PatternAnalyzer) -> None:
        for i, score in enumerate((10, 10, 10, 95)):
            assert analyzer.record_event(_event(f"s{i}", score)) == []

    def test_high_risk_tracker_alert(self, analyzer: PatternAnalyzer) -> None:
        for i in range(10):
            analyzer.record_event(_event(f"s{i}", 10))
        alerts = analyzer.record_event(_event("s-new", 90, domain="bad.com"))
        assert [a.type for a in alerts] == ["high_risk_tracker"]
        assert alerts[0].severity == "alert"
        assert alerts[0].domain == "bad.com"
        assert "risk score: 90" in alerts[0].message

    def test_steady_traffic_raises_nothing(self, analyzer: PatternAnalyzer) -> None:
        alerts = [analyzer.record_event(_event("s1", 20)) for _ in range(30)]
        assert not any(alerts)

    def test_alerts_counted_in_summary(self, analyzer: PatternAnalyzer) -> None:
        for i in range(10):
            analyzer.record_event(_event(f"s{i}", 10))
        analyzer.record_event(_event("s-new", 90))
        summary = analyzer.get_session_summary("s-new")
        assert summary.alert_count == 1
        assert summary.recent_alerts[0].type == "high_risk_tracker"


class TestSessionSummary:
    def test_breakdowns(self, analyzer: PatternAnalyzer) -> None:
        analyzer.record_event(_event("s1", 10, "Analytics", domain="a.com"))
        analyzer.record_event(_event("s1", 90, "Advertising", domain="b.com"))
        analyzer.record_event(_event("s1", 65, "Advertising", domain="b.com"))
        summary = analyzer.get_session_summary("s1", now=NOW + 600)
        assert summary.total_trackers == 3
        assert summary.unique_trackers == 2
        assert summary.avg_risk_score == 55
        assert summary.category_breakdown == {"Analytics": 1, "Advertising": 2}
        assert (summary.risk_breakdown.low, summary.risk_breakdown.high, summary.risk_breakdown.critical) == (1, 1, 1)
        assert summary.duration_minutes == 10

    def test_unknown_session(self, analyzer: PatternAnalyzer) -> None:
        assert analyzer.get_session_summary("nope").total_trackers == 0

    def test_privacy_score(self, analyzer: PatternAnalyzer) -> None:
        analyzer.record_event(_event("s1", 90))
        analyzer.record_event(_event("s1", 90))
        assert analyzer.get_privacy_score("s1") == 79
        assert analyzer.get_privacy_score("empty") == 100


class TestInsights:
    def test_category_and_time(self, analyzer: PatternAnalyzer) -> None:
        analyzer.record_event(_event("s1", category="Advertising"))
        analyzer.record_event(_event("s1", category="Advertising"))
        analyzer.record_event(_event("s1", category="Analytics"))
        types = {i.type: i.message for i in analyzer.get_insights()}
        assert types["category"] == "Advertising trackers are most common in your browsing (2 detected)"
        assert "time" in types

    def test_volume_change_needs_history(self, analyzer: PatternAnalyzer) -> None:
        analyzer.record_event(_event("s1"))
        assert all(i.type not in ("increase", "decrease") for i in analyzer.get_insights("s1"))


class TestSiteBaselines:
    def _visit(self, analyzer: PatternAnalyzer, session_id: str, trackers: int) -> None:
        analyzer.record_site_visit(session_id, "https://news.com/", now=NOW)
        for _ in range(trackers):
            analyzer.record_event(_event(session_id, website_url="https://news.com/a"))

    def test_needs_three_visits(self, analyzer: PatternAnalyzer) -> None:
        self._visit(analyzer, "s1", 2)
        assert analyzer.compare_site_to_baseline("s1", "https://news.com/").has_baseline is False

    def test_unusual_session(self, analyzer: PatternAnalyzer) -> None:
        for i in range(3):
            self._visit(analyzer, f"s{i}", 2)
            analyzer.end_session(f"s{i}")
        self._visit(analyzer, "s9", 4)

        comparison = analyzer.compare_site_to_baseline("s9", "https://news.com/")
        assert comparison.has_baseline is True
        assert comparison.avg_trackers == 2.0
        assert comparison.visit_count == 4
        assert comparison.current_trackers == 4
        assert comparison.is_unusual is True

    def test_end_session_forgets(self, analyzer: PatternAnalyzer) -> None:
        self._visit(analyzer, "s1", 1)
        assert analyzer.end_session("s1") is not None
        assert analyzer.has_session("s1") is False
        assert analyzer.end_session("s1") is None


class TestPruning:
    def test_old_days_dropped(self, analyzer: PatternAnalyzer) -> None:
        analyzer.record_event(_event("s1", timestamp=NOW - 30 * 86400))
        analyzer.record_event(_event("s1", timestamp=NOW))
        assert analyzer.prune(now=NOW) == 1
        assert len(analyzer.history["dailyAverages"]) == 1

    def test_site_cap_drops_least_visited(self, store: MemoryStore) -> None:
        analyzer = PatternAnalyzer(store, max_sites=2)
        for site, visits in (("a.com", 3), ("b.com", 1), ("c.com", 2)):
            for _ in range(visits):
                analyzer.record_site_visit("s1", f"https://{site}/", now=NOW)
        analyzer.prune(now=NOW)
        assert sorted(analyzer.history["sitePatterns"]) == ["a.com", "c.com"]

    async def test_save_prunes_to_budget(self, store: MemoryStore) -> None:
        analyzer = PatternAnalyzer(store, max_state_bytes=600)
        for day in range(5):
            analyzer.record_event(_event("s1", timestamp=NOW - day * 86400))
        assert await analyzer.save_state(now=NOW) is True
        assert analyzer.state_size() <= 600 or not analyzer.history["dailyAverages"]
        assert store.data["patterns"]["patternAnalyzerState"]["lastSaved"] == NOW


class TestPersistence:
    async def test_round_trip(self, analyzer: PatternAnalyzer, store: MemoryStore) -> None:
        for _ in range(3):
            analyzer.record_event(_event("s1", 40))
        await analyzer.save_state(now=NOW)

        restored = PatternAnalyzer(store)
        await restored.load_state()
        assert restored.risk_score.stats() == analyzer.risk_score.stats()
        assert restored.history["categoryFrequency"] == {"Analytics": 3}

    async def test_save_due_after_threshold(self, store: MemoryStore) -> None:
        analyzer = PatternAnalyzer(store, save_every=2)
        analyzer.record_event(_event("s1"))
        assert analyzer.save_due is False
        analyzer.record_event(_event("s1"))
        assert analyzer.save_due is True
        await analyzer.save_state()
        assert analyzer.save_due is False

    async def test_clear_all_data(self, analyzer: PatternAnalyzer, store: MemoryStore) -> None:
        analyzer.record_event(_event("s1"))
        await analyzer.save_state()
        await analyzer.clear_all_data()
        assert analyzer.tracker_count.stats().data_points == 0
        assert "patternAnalyzerState" not in store.data["patterns"]
