"""Tests for the HTTP routes in tracksentry.main."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from tracksentry.capabilities.filtering import MemoryFilter
from tracksentry.main import create_app

AD_PIXEL = "https://ad.doubleclick.net/pixel"


@pytest.fixture()
def client(orchestrator_factory) -> Iterator[TestClient]:
    app = create_app(orchestrator=orchestrator_factory())
    with TestClient(app) as test_client:
        yield test_client


def _submit(client: TestClient, url: str = AD_PIXEL, session_id: str = "tab-1") -> dict:
    response = client.post(
        "/api/requests",
        json={"url": url, "sessionId": session_id, "initiatorUrl": "https://news.example.com/"},
    )
    assert response.status_code == 200
    return response.json()


class TestRequestRoutes:
    def test_submit(self, client: TestClient) -> None:
        body = _submit(client)
        assert body["success"] is True
        assert body["data"]["effectiveMode"] == "block"

    def test_missing_session_rejected(self, client: TestClient) -> None:
        response = client.post("/api/requests", json={"url": AD_PIXEL})
        assert response.status_code == 422

    def test_context_and_stats(self, client: TestClient) -> None:
        response = client.post("/api/sessions/tab-1/context", json={"pageUrl": "https://shop.example.com/cart"})
        assert response.json()["data"]["contexts"] == ["checkout"]

        stats = client.get("/api/sessions/tab-1/stats").json()["data"]
        assert stats["contexts"] == ["checkout"]

    def test_trackers_and_close(self, client: TestClient) -> None:
        _submit(client)
        trackers = client.get("/api/sessions/tab-1/trackers").json()["data"]
        assert [t["domain"] for t in trackers] == ["ad.doubleclick.net"]

        closed = client.delete("/api/sessions/tab-1").json()
        assert closed["data"]["trackers"] == 1
        assert client.get("/api/sessions/tab-1/trackers").json()["data"] == []

    def test_report_and_patterns(self, client: TestClient) -> None:
        _submit(client)
        report = client.get("/api/sessions/tab-1/report").json()["data"]
        assert report["stats"]["totalRequests"] == 1
        patterns = client.get("/api/sessions/tab-1/patterns").json()["data"]
        assert patterns["privacyScore"] == 90


class TestControlRoutes:
    def test_override_round_trip(self, client: TestClient, rule_filter: MemoryFilter) -> None:
        _submit(client)
        response = client.post(
            "/api/overrides",
            json={"domain": "ad.doubleclick.net", "mode": "allow", "sessionId": "tab-1"},
        )
        assert response.json()["success"] is True
        assert rule_filter.block_rules() == []

        cleared = client.delete("/api/overrides/ad.doubleclick.net", params={"sessionId": "tab-1"}).json()
        assert cleared["data"]["removed"] is True

    def test_invalid_mode_rejected(self, client: TestClient) -> None:
        response = client.post("/api/overrides", json={"domain": "a.com", "mode": "nuke", "sessionId": "tab-1"})
        assert response.status_code == 422

    def test_force_block_unblock(self, client: TestClient, rule_filter: MemoryFilter) -> None:
        assert client.post("/api/domains/tracker.com/block").json()["success"] is True
        assert len(rule_filter.block_rules()) == 1
        assert client.post("/api/domains/tracker.com/unblock").json()["data"]["removed"] is True

    def test_probes_and_fingerprints(self, client: TestClient) -> None:
        probe = client.post("/api/probes", json={"domain": "fp.com", "type": "audio_fingerprint"}).json()
        assert probe["data"]["flagged"] is True

        listing = client.get("/api/fingerprints").json()["data"]
        assert [s["domain"] for s in listing] == ["fp.com"]

        client.delete("/api/fingerprints", params={"domain": "fp.com"})
        assert client.get("/api/fingerprints").json()["data"] == []

    def test_insights(self, client: TestClient) -> None:
        _submit(client)
        data = client.get("/api/insights").json()["data"]
        assert data["summary"]["totalTrackers"] == 1

    def test_feedback_errors_are_results(self, client: TestClient) -> None:
        body = client.post("/api/feedback", json={"domain": "a.com", "newCategory": "Malware"}).json()
        assert body == {"success": False, "data": None, "error": "Unknown category: Malware"}

    def test_clear_patterns(self, client: TestClient) -> None:
        _submit(client)
        assert client.delete("/api/patterns").json()["data"] == {"cleared": True}
