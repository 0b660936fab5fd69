"""Category classifier collaborator.

Consulted only when the static tracker lookup misses.  The
engine treats it as a black box returning a category and a
confidence in ``[0, 1]``.
"""

from __future__ import annotations

from typing import Protocol

from tracksentry.models.requests import Classification


class Classifier(Protocol):
    def classify(self, url: str, domain: str) -> Classification: ...


# Keyword weights per category.  Domain hits count double
# because path fragments are noisier.
_URL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Analytics": ("/analytics", "/collect", "/beacon", "/track", "/pageview", "/gtag"),
    "Advertising": ("/ads", "/pixel", "/conversion", "/retarget", "/adserver", "/banner"),
    "Social": ("/share", "/social", "/widget", "/like"),
    "Session Recording": ("/record", "/replay", "/heatmap", "/session"),
    "Payment": ("/pay", "/checkout", "/billing"),
    "CDN": ("/cdn", "/static", "/assets", "/dist"),
}

_DOMAIN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Analytics": ("analytics", "stats", "metrics", "measure", "insight"),
    "Advertising": ("ads", "adserv", "advert", "banner", "sponsor", "promo"),
    "Social": ("social", "share", "connect"),
    "Session Recording": ("hotjar", "fullstory", "mouseflow", "logrocket", "replay", "record"),
    "Payment": ("pay", "stripe", "braintree", "checkout"),
    "CDN": ("cdn", "static", "cloudfront", "fastly", "akamai"),
}


class KeywordClassifier:
    """Heuristic classifier scoring keyword hits per category.

    Confidence is the winning category's share of all hits,
    so a URL matching a single category scores 1.0 and a URL
    matching nothing is ``Unknown`` with confidence 0.
    """

    def classify(self, url: str, domain: str) -> Classification:
        url_lower = url.lower()
        domain_lower = domain.lower()
        scores: dict[str, float] = {}
        for category, keywords in _URL_KEYWORDS.items():
            scores[category] = float(sum(1 for k in keywords if k in url_lower))
        for category, keywords in _DOMAIN_KEYWORDS.items():
            scores[category] = scores.get(category, 0.0) + 2.0 * sum(1 for k in keywords if k in domain_lower)

        total = sum(scores.values())
        if total <= 0:
            return Classification(category="Unknown", confidence=0.0)
        best = max(scores, key=lambda c: scores[c])
        return Classification(category=best, confidence=round(scores[best] / total, 3))
