"""Shared fixtures for the test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from tracksentry.analysis.context import ContextDetector
from tracksentry.analysis.policy import PolicyEngine
from tracksentry.analysis.risk import RiskEngine
from tracksentry.capabilities.classifier import KeywordClassifier
from tracksentry.capabilities.filtering import MemoryFilter
from tracksentry.capabilities.persistence import MemoryStore
from tracksentry.enforcement.engine import EnforcementEngine
from tracksentry.models.policy import PolicyConfig
from tracksentry.models.requests import InterceptedRequest
from tracksentry.pipeline.orchestrator import Orchestrator

# ── Collaborators ───────────────────────────────────────────────


@pytest.fixture()
def policy() -> PolicyConfig:
    """The shipped default policy."""
    return PolicyConfig()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def rule_filter() -> MemoryFilter:
    return MemoryFilter()


# ── Engines ─────────────────────────────────────────────────────


@pytest.fixture()
def contexts(policy: PolicyConfig) -> ContextDetector:
    return ContextDetector(policy)


@pytest.fixture()
def risk(policy: PolicyConfig) -> RiskEngine:
    return RiskEngine(policy)


@pytest.fixture()
def policy_engine(policy: PolicyConfig, contexts: ContextDetector, store: MemoryStore) -> PolicyEngine:
    return PolicyEngine(policy, contexts, store)


@pytest.fixture()
def enforcement(rule_filter: MemoryFilter, policy: PolicyConfig, store: MemoryStore) -> EnforcementEngine:
    return EnforcementEngine(rule_filter, policy, store)


@pytest.fixture()
def orchestrator_factory(policy: PolicyConfig, rule_filter: MemoryFilter, store: MemoryStore):
    """Build an orchestrator around the shared filter and store (not started)."""

    def factory(**kwargs: object) -> Orchestrator:
        options: dict[str, object] = {"classifier": KeywordClassifier(), "workers": 2, "deferred_grace_seconds": 0.01}
        options.update(kwargs)
        return Orchestrator(policy, rule_filter, store, **options)  # type: ignore[arg-type]

    return factory


@pytest.fixture()
async def orchestrator(orchestrator_factory) -> AsyncIterator[Orchestrator]:
    """A started orchestrator, shut down after the test."""
    engine = orchestrator_factory()
    await engine.init()
    yield engine
    await engine.shutdown()


# ── Request factories ───────────────────────────────────────────


@pytest.fixture()
def make_request():
    """Build an intercepted request with sensible defaults."""

    def factory(
        request_url: str,
        initiator: str | None = "https://news.example.com/article",
        session_id: str = "tab-1",
        resource_type: str = "script",
        observed_at: float = 1_700_000_000.0,
    ) -> InterceptedRequest:
        return InterceptedRequest(
            url=request_url,
            initiator_url=initiator,
            session_id=session_id,
            resource_type=resource_type,
            observed_at=observed_at,
        )

    return factory
