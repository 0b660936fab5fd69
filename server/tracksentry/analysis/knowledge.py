"""
Tracker identity resolution.

Looks a destination up in the static tracker database (exact
host first, then parent-domain suffix), falls back to the
classifier collaborator for hosts the database does not know,
and finally to an ``Unknown`` identity.  User category
corrections take precedence over all of these and are
persisted in the ``feedback`` namespace.
"""

from __future__ import annotations

import time
from typing import Any

from tracksentry.capabilities.classifier import Classifier
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.data import loader
from tracksentry.models.control import CategoryFeedback
from tracksentry.models.policy import PolicyConfig
from tracksentry.models.requests import TRACKER_CATEGORIES, TrackerIdentity, normalize_category
from tracksentry.utils import errors, logger, url

log = logger.create_logger("Knowledge")

_NAMESPACE = "feedback"
_CORRECTIONS_KEY = "categoryCorrections"

CATEGORY_DESCRIPTIONS: dict[str, str] = {
    "Advertising": "Tracks your browsing to build advertising profiles and serve targeted ads",
    "Analytics": "Monitors website usage and user behavior for analytics purposes",
    "Session Recording": "Records your mouse movements, clicks, and interactions on the page",
    "Social": "Connects your browsing activity to social media profiles",
    "Tag Manager": "Coordinates multiple tracking pixels and marketing tags",
    "Payment": "Processes payment transactions and billing information",
    "Security": "Provides security services like bot detection and fraud prevention",
    "CDN": "Delivers website content and resources efficiently",
    "Unknown": "Third-party service with unclear purpose",
}

CATEGORY_DATA_COLLECTED: dict[str, tuple[str, ...]] = {
    "Advertising": ("Browsing history", "Ad interactions", "User interests", "Device fingerprint"),
    "Analytics": ("Page views", "User actions", "Session duration", "Location", "Device info"),
    "Session Recording": ("Mouse movements", "Clicks", "Scrolling", "Form inputs", "Session replays"),
    "Social": ("Social interactions", "Profile data", "Shared content", "Friend networks"),
    "Tag Manager": ("Page events", "User actions", "Custom data layers", "Conversion tracking"),
    "Payment": ("Transaction data", "Payment methods", "Billing information"),
    "Security": ("Browser fingerprint", "Challenge responses", "IP address"),
    "CDN": ("Resource requests", "Performance metrics"),
    "Unknown": ("Browsing behavior", "Request metadata"),
}

CATEGORY_REGULATIONS: dict[str, str] = {
    "Advertising": "Usually requires explicit consent under GDPR and CCPA",
    "Analytics": "May require consent depending on jurisdiction and data processing",
    "Session Recording": "Requires explicit consent for recording user sessions",
    "Social": "Often requires consent for cross-site tracking",
    "Tag Manager": "Compliance depends on the tags being managed",
    "Payment": "Subject to PCI-DSS and financial regulations",
    "Security": "Generally allowed for fraud prevention purposes",
    "CDN": "Typically does not require consent for core functionality",
    "Unknown": "Regulatory requirements unclear",
}


def describe_category(category: str, company: str = "Unknown") -> str:
    description = CATEGORY_DESCRIPTIONS.get(category, CATEGORY_DESCRIPTIONS["Unknown"])
    if company and company != "Unknown":
        description += f" (operated by {company})"
    return description


class TrackerKnowledge:
    """Resolves hosts to :class:`TrackerIdentity` records."""

    def __init__(
        self,
        policy: PolicyConfig,
        classifier: Classifier | None,
        store: KeyValueStore,
        database: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self._policy = policy
        self._classifier = classifier
        self._store = store
        self._database = {k.lower(): v for k, v in database.items()} if database is not None else None
        self._corrections: dict[str, dict[str, Any]] = {}

    @property
    def database(self) -> dict[str, dict[str, str]]:
        if self._database is None:
            self._database = loader.get_tracker_database()
        return self._database

    # ── Lookup ──────────────────────────────────────────────

    def lookup(self, domain: str) -> dict[str, str] | None:
        """Static entry for *domain*: exact host, then closest parent domain."""
        domain = domain.lower()
        entry = self.database.get(domain)
        if entry is not None:
            return entry
        parts = domain.split(".")
        for i in range(1, len(parts) - 1):
            entry = self.database.get(".".join(parts[i:]))
            if entry is not None:
                return entry
        return None

    def _identity(self, domain: str, company: str, category: str, **extra: Any) -> TrackerIdentity:
        return TrackerIdentity(
            domain=domain,
            company=company,
            category=category,
            base_risk=self._policy.category_base_risk.get(category, self._policy.category_base_risk.get("Unknown", 10)),
            data_collected=CATEGORY_DATA_COLLECTED.get(category, CATEGORY_DATA_COLLECTED["Unknown"]),
            regulation=CATEGORY_REGULATIONS.get(category, CATEGORY_REGULATIONS["Unknown"]),
            description=describe_category(category, company),
            **extra,
        )

    def resolve(self, request_url: str) -> TrackerIdentity:
        """Identity for the host of *request_url*.

        Raises:
            MalformedRequestError: If *request_url* has no usable host.
        """
        domain = url.extract_tracker_domain(request_url)
        if not domain:
            raise errors.MalformedRequestError(f"No host in {request_url[:120]!r}")

        entry = self.lookup(domain)
        company = entry.get("company", "Unknown") if entry else "Unknown"
        category = normalize_category(entry.get("category")) if entry else "Unknown"

        correction = self._corrections.get(domain)
        if correction is not None:
            return self._identity(domain, company, correction["category"])

        if entry is not None:
            return self._identity(domain, company, category)

        if self._classifier is not None:
            try:
                result = self._classifier.classify(request_url, domain)
            except Exception as exc:
                log.warn("Classifier failed, using Unknown", {"domain": domain, "error": errors.get_error_message(exc)})
            else:
                category = normalize_category(result.category)
                if category != "Unknown" and result.confidence >= self._policy.classifier_min_confidence:
                    identity = self._identity(domain, "Unknown", category, classified=True, confidence=result.confidence)
                    return identity.model_copy(update={"description": identity.description + " (classifier-detected)"})

        return self._identity(domain, "Unknown", "Unknown")

    @staticmethod
    def is_tracker(identity: TrackerIdentity) -> bool:
        """Whether the identity came from somewhere other than the bare fallback."""
        return identity.company != "Unknown" or identity.category != "Unknown"

    # ── Feedback ────────────────────────────────────────────

    async def load_feedback(self) -> None:
        try:
            saved = await self._store.get(_NAMESPACE, _CORRECTIONS_KEY)
        except errors.CapabilityError as exc:
            log.error("Category feedback load failed", {"error": str(exc)})
            return
        if isinstance(saved, dict):
            self._corrections = {
                domain: value for domain, value in saved.items() if value.get("category") in TRACKER_CATEGORIES
            }
            log.debug("Category feedback restored", {"corrections": len(self._corrections)})

    async def submit_feedback(self, feedback: CategoryFeedback) -> TrackerIdentity:
        """Record a category correction and return the corrected identity.

        Raises:
            ValueError: If the new category is not a known tracker category.
        """
        if feedback.new_category not in TRACKER_CATEGORIES:
            raise ValueError(f"Unknown category: {feedback.new_category}")
        domain = feedback.domain.lower()
        self._corrections[domain] = {
            "category": feedback.new_category,
            "oldCategory": feedback.old_category,
            "url": feedback.url,
            "timestamp": feedback.timestamp or time.time(),
        }
        await self._store.set(_NAMESPACE, _CORRECTIONS_KEY, self._corrections)
        log.info(
            "Category corrected",
            {"domain": domain, "from": feedback.old_category, "to": feedback.new_category},
        )
        return self.resolve(f"https://{domain}/")

    def corrections(self) -> dict[str, dict[str, Any]]:
        return dict(self._corrections)
