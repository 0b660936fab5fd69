"""Tests for tracksentry.analysis.knowledge: identity resolution and feedback."""

from __future__ import annotations

import pytest

from tracksentry.analysis.knowledge import TrackerKnowledge, describe_category
from tracksentry.capabilities.classifier import KeywordClassifier
from tracksentry.capabilities.persistence import MemoryStore
from tracksentry.models.control import CategoryFeedback
from tracksentry.models.policy import PolicyConfig
from tracksentry.models.requests import Classification
from tracksentry.utils import errors

DATABASE = {
    "doubleclick.net": {"company": "Google", "category": "Advertising"},
    "google-analytics.com": {"company": "Google", "category": "Analytics"},
    "hotjar.com": {"company": "Hotjar", "category": "session recording"},
}


class _FailingClassifier:
    def classify(self, url: str, domain: str) -> Classification:
        raise RuntimeError("classifier unavailable")


@pytest.fixture()
def knowledge(policy: PolicyConfig, store: MemoryStore) -> TrackerKnowledge:
    return TrackerKnowledge(policy, KeywordClassifier(), store, DATABASE)


class TestLookup:
    def test_exact_host(self, knowledge: TrackerKnowledge) -> None:
        assert knowledge.lookup("doubleclick.net") == DATABASE["doubleclick.net"]

    def test_parent_domain(self, knowledge: TrackerKnowledge) -> None:
        assert knowledge.lookup("stats.g.doubleclick.net") == DATABASE["doubleclick.net"]

    def test_miss(self, knowledge: TrackerKnowledge) -> None:
        assert knowledge.lookup("example.org") is None


class TestResolve:
    def test_static_entry(self, knowledge: TrackerKnowledge) -> None:
        identity = knowledge.resolve("https://www.google-analytics.com/collect")
        assert identity is not None
        assert (identity.domain, identity.company, identity.category) == ("google-analytics.com", "Google", "Analytics")
        assert identity.base_risk == 15
        assert identity.description.endswith("(operated by Google)")
        assert identity.classified is False

    def test_category_normalised(self, knowledge: TrackerKnowledge) -> None:
        identity = knowledge.resolve("https://script.hotjar.com/x.js")
        assert identity is not None and identity.category == "Session Recording"

    def test_classifier_fallback(self, knowledge: TrackerKnowledge) -> None:
        identity = knowledge.resolve("https://metrics.newco.io/collect")
        assert identity is not None
        assert identity.category == "Analytics"
        assert identity.classified is True
        assert identity.description.endswith("(classifier-detected)")

    def test_unknown_fallback(self, knowledge: TrackerKnowledge) -> None:
        identity = knowledge.resolve("https://api.partner.io/v1/items")
        assert identity is not None
        assert (identity.company, identity.category, identity.classified) == ("Unknown", "Unknown", False)
        assert TrackerKnowledge.is_tracker(identity) is False

    def test_malformed(self, knowledge: TrackerKnowledge) -> None:
        with pytest.raises(errors.MalformedRequestError):
            knowledge.resolve("not a url")

    def test_classifier_failure_falls_back_to_unknown(self, policy: PolicyConfig, store: MemoryStore) -> None:
        broken = TrackerKnowledge(policy, _FailingClassifier(), store, DATABASE)
        identity = broken.resolve("https://unknown-thing.io/x.js")
        assert (identity.domain, identity.company, identity.category) == ("unknown-thing.io", "Unknown", "Unknown")
        assert identity.classified is False

    def test_low_confidence_classification_ignored(self, policy: PolicyConfig, store: MemoryStore) -> None:
        strict = TrackerKnowledge(policy.model_copy(update={"classifier_min_confidence": 1.1}), KeywordClassifier(), store, DATABASE)
        identity = strict.resolve("https://metrics.newco.io/collect")
        assert identity is not None and identity.category == "Unknown"


class TestFeedback:
    async def test_correction_wins(self, knowledge: TrackerKnowledge, store: MemoryStore) -> None:
        identity = await knowledge.submit_feedback(
            CategoryFeedback(domain="doubleclick.net", old_category="Advertising", new_category="Analytics")
        )
        assert identity.category == "Analytics"
        assert identity.company == "Google"
        assert store.data["feedback"]["categoryCorrections"]["doubleclick.net"]["category"] == "Analytics"

    async def test_restored_on_load(self, policy: PolicyConfig, knowledge: TrackerKnowledge, store: MemoryStore) -> None:
        await knowledge.submit_feedback(CategoryFeedback(domain="api.partner.io", new_category="Advertising"))
        fresh = TrackerKnowledge(policy, None, store, DATABASE)
        await fresh.load_feedback()
        identity = fresh.resolve("https://api.partner.io/")
        assert identity is not None and identity.category == "Advertising"

    async def test_unknown_category_rejected(self, knowledge: TrackerKnowledge) -> None:
        with pytest.raises(ValueError):
            await knowledge.submit_feedback(CategoryFeedback(domain="a.com", new_category="Malware"))


class TestDescribeCategory:
    def test_without_company(self) -> None:
        assert describe_category("CDN") == "Delivers website content and resources efficiently"
