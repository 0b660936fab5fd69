"""Tests for tracksentry.utils.url: URL and domain helpers."""

from __future__ import annotations

import pytest

from tracksentry.utils.url import (
    extract_domain,
    extract_tracker_domain,
    get_base_domain,
    is_third_party,
    matches_either_way,
    matches_suffix,
)

# ── extract_domain ──────────────────────────────────────────────


class TestExtractDomain:
    """Tests for extract_domain()."""

    def test_simple_url(self) -> None:
        assert extract_domain("https://example.com/path") == "example.com"

    def test_url_with_port(self) -> None:
        assert extract_domain("https://example.com:8080/path") == "example.com"

    def test_invalid_url_returns_unknown(self) -> None:
        assert extract_domain("not a url") == "unknown"

    def test_url_without_scheme(self) -> None:
        assert extract_domain("example.com") == "unknown"


class TestExtractTrackerDomain:
    def test_strips_www(self) -> None:
        assert extract_tracker_domain("https://www.google-analytics.com/collect") == "google-analytics.com"

    def test_keeps_other_subdomains(self) -> None:
        assert extract_tracker_domain("https://ad.doubleclick.net/pixel") == "ad.doubleclick.net"

    def test_malformed_is_none(self) -> None:
        assert extract_tracker_domain("::::") is None


# ── get_base_domain ─────────────────────────────────────────────


class TestGetBaseDomain:
    @pytest.mark.parametrize(
        ("domain", "expected"),
        [
            ("example.com", "example.com"),
            ("www.example.com", "example.com"),
            ("sub.example.com", "example.com"),
            ("sub.example.co.uk", "example.co.uk"),
            ("WWW.EXAMPLE.COM", "example.com"),
            ("localhost", "localhost"),
        ],
    )
    def test_base_domain(self, domain: str, expected: str) -> None:
        assert get_base_domain(domain) == expected


# ── is_third_party ──────────────────────────────────────────────


class TestIsThirdParty:
    def test_same_domain(self) -> None:
        assert is_third_party("https://example.com/script.js", "https://example.com/page") is False

    def test_subdomain_same_base(self) -> None:
        assert is_third_party("https://cdn.example.com/script.js", "https://www.example.com/page") is False

    def test_different_domain(self) -> None:
        assert is_third_party("https://tracker.com/pixel", "https://example.com/page") is True

    def test_missing_page_counts_as_third_party(self) -> None:
        assert is_third_party("https://tracker.com/pixel", None) is True


class TestDomainMatching:
    def test_either_way_substring(self) -> None:
        assert matches_either_way("ad.doubleclick.net", ["doubleclick.net"]) is True
        assert matches_either_way("stripe.com", ["js.stripe.com"]) is True

    def test_either_way_no_match(self) -> None:
        assert matches_either_way("example.org", ["doubleclick.net"]) is False
        assert matches_either_way("", ["doubleclick.net"]) is False

    def test_suffix_requires_label_boundary(self) -> None:
        assert matches_suffix("cdnjs.cloudflare.com", ["cloudflare.com"]) is True
        assert matches_suffix("notcloudflare.com", ["cloudflare.com"]) is False
