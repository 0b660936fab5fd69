"""Browser-fingerprinting detection.

Counts API probes per destination and flags a technique once
its count reaches the configured threshold.  Audio, WebRTC and
battery probes are flagged on the first signal because they
are almost never used for anything else.  Flags only grow;
they are removed solely by :meth:`FingerprintDetector.clear_domain`
or :meth:`FingerprintDetector.clear_all`.

State (flags, call counts and the call-volume baseline) is
persisted in the ``fingerprint`` namespace.
"""

from __future__ import annotations

from typing import Any

from tracksentry.analysis.baseline import Baseline
from tracksentry.capabilities.persistence import KeyValueStore
from tracksentry.models.fingerprint import FingerprintSummary, ProbeEvent, TechniqueDetail
from tracksentry.utils import errors, logger

log = logger.create_logger("Fingerprint")

_NAMESPACE = "fingerprint"
_STATE_KEY = "fingerprintDetectorState"

CANVAS = "canvas"
WEBGL = "webgl"
AUDIO = "audio"
FONTS = "fonts"
NAVIGATOR = "navigator"
SCREEN = "screen"
TIMEZONE = "timezone"
PLUGINS = "plugins"
WEBRTC = "webrtc"
BATTERY = "battery"

TECHNIQUE_RISK: dict[str, int] = {
    CANVAS: 25,
    WEBGL: 20,
    AUDIO: 30,
    FONTS: 15,
    NAVIGATOR: 10,
    SCREEN: 8,
    TIMEZONE: 5,
    PLUGINS: 12,
    WEBRTC: 25,
    BATTERY: 15,
}
_UNKNOWN_TECHNIQUE_RISK = 10

DEFAULT_THRESHOLDS: dict[str, int] = {
    CANVAS: 3,
    WEBGL: 5,
    AUDIO: 2,
    NAVIGATOR: 15,
    SCREEN: 10,
    FONTS: 20,
}
_DEFAULT_THRESHOLD = 10

IMMEDIATE_TECHNIQUES = frozenset({AUDIO, WEBRTC, BATTERY})

TECHNIQUE_DESCRIPTIONS: dict[str, str] = {
    CANVAS: "Reading canvas data to create a unique device fingerprint",
    WEBGL: "Querying graphics card info for device identification",
    AUDIO: "Using audio processing to fingerprint your device",
    FONTS: "Probing installed fonts to identify your system",
    NAVIGATOR: "Collecting browser and device configuration details",
    SCREEN: "Reading screen resolution and display properties",
    TIMEZONE: "Detecting your timezone for location inference",
    PLUGINS: "Enumerating browser plugins for fingerprinting",
    WEBRTC: "Using WebRTC to discover your real IP address",
    BATTERY: "Reading battery status for device identification",
}

# Probe event type reported by the page layer -> technique.
_EVENT_TECHNIQUES: dict[str, str] = {
    "canvas_read": CANVAS,
    "webgl_info": WEBGL,
    "audio_fingerprint": AUDIO,
    "navigator_probe": NAVIGATOR,
    "font_probe": FONTS,
    "screen_probe": SCREEN,
    "timezone_probe": TIMEZONE,
    "plugin_probe": PLUGINS,
    "webrtc_probe": WEBRTC,
    "battery_probe": BATTERY,
}


class FingerprintDetector:
    """Per-domain technique flags and probe counters."""

    def __init__(
        self,
        store: KeyValueStore,
        thresholds: dict[str, int] | None = None,
        baseline_window: int = 50,
    ) -> None:
        self._store = store
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._baseline_window = baseline_window
        self._techniques: dict[str, set[str]] = {}
        self._call_counts: dict[str, dict[str, int]] = {}
        self._volume = Baseline(window=baseline_window)
        self._dirty = False

    # ── Recording ───────────────────────────────────────────

    def record_api_call(self, domain: str, technique: str, details: dict[str, Any] | None = None) -> bool:
        """Count one probe; returns ``True`` if a technique was newly flagged."""
        counts = self._call_counts.setdefault(domain, {})
        counts[technique] = counts.get(technique, 0) + 1
        self._dirty = True

        flagged = False
        if technique in IMMEDIATE_TECHNIQUES or counts[technique] >= self.thresholds.get(technique, _DEFAULT_THRESHOLD):
            flagged = self.flag_technique(domain, technique)

        self._volume.add(sum(counts.values()))
        return flagged

    def flag_technique(self, domain: str, technique: str) -> bool:
        techniques = self._techniques.setdefault(domain, set())
        if technique in techniques:
            return False
        techniques.add(technique)
        self._dirty = True
        log.info("Fingerprinting technique detected", {"domain": domain, "technique": technique})
        return True

    def analyze_event(self, event: ProbeEvent) -> bool:
        """Route a page-layer probe event; returns whether anything new was flagged.

        Canvas reads that export pixel data and WebGL queries for
        the unmasked renderer or vendor are direct fingerprinting
        and flag on the spot.
        """
        technique = _EVENT_TECHNIQUES.get(event.type)
        if technique is None:
            log.debug("Ignoring unknown probe event", {"type": event.type, "domain": event.domain})
            return False

        flagged = self.record_api_call(event.domain, technique, event.data)
        data = event.data
        if technique == CANVAS and (data.get("isDataUrl") or data.get("isImageData")):
            flagged = self.flag_technique(event.domain, CANVAS) or flagged
        elif technique == WEBGL and (data.get("renderer") or data.get("vendor")):
            flagged = self.flag_technique(event.domain, WEBGL) or flagged
        return flagged

    # ── Queries ─────────────────────────────────────────────

    def get_risk_score(self, domain: str) -> int:
        techniques = self._techniques.get(domain)
        if not techniques:
            return 0
        return min(100, sum(TECHNIQUE_RISK.get(t, _UNKNOWN_TECHNIQUE_RISK) for t in techniques))

    def get_techniques(self, domain: str) -> list[TechniqueDetail]:
        return [
            TechniqueDetail(
                technique=t,
                risk=TECHNIQUE_RISK.get(t, _UNKNOWN_TECHNIQUE_RISK),
                description=TECHNIQUE_DESCRIPTIONS.get(t, "Unknown fingerprinting technique"),
            )
            for t in sorted(self._techniques.get(domain, ()))
        ]

    def is_fingerprinting(self, domain: str) -> bool:
        return bool(self._techniques.get(domain))

    def flagged_domains(self) -> dict[str, frozenset[str]]:
        """Every domain with at least one flagged technique."""
        return {d: frozenset(t) for d, t in self._techniques.items() if t}

    def total_calls(self, domain: str) -> int:
        return sum(self._call_counts.get(domain, {}).values())

    def get_summary(self, domain: str) -> FingerprintSummary:
        techniques = self.get_techniques(domain)
        counts = dict(self._call_counts.get(domain, {}))
        anomaly = self._volume.anomaly_score(self.total_calls(domain))
        if not techniques:
            return FingerprintSummary(domain=domain, call_counts=counts, anomaly_score=anomaly)

        risk = self.get_risk_score(domain)
        names = ", ".join(t.technique for t in techniques)
        if risk >= 50:
            summary = f"High fingerprinting risk: {names}"
        elif risk >= 25:
            summary = f"Moderate fingerprinting: {names}"
        else:
            summary = f"Low fingerprinting: {names}"

        return FingerprintSummary(
            domain=domain,
            detected=True,
            risk_score=risk,
            techniques=techniques,
            call_counts=counts,
            summary=summary,
            anomaly_score=anomaly,
        )

    # ── Clearing ────────────────────────────────────────────

    def clear_domain(self, domain: str) -> None:
        self._techniques.pop(domain, None)
        self._call_counts.pop(domain, None)
        self._dirty = True

    def clear_all(self) -> None:
        self._techniques.clear()
        self._call_counts.clear()
        self._volume = Baseline(window=self._baseline_window)
        self._dirty = True

    # ── Persistence ─────────────────────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "detectedTechniques": {d: sorted(t) for d, t in self._techniques.items()},
            "callCounts": {d: dict(c) for d, c in self._call_counts.items()},
            "anomalyState": self._volume.export_state(),
        }

    async def load_state(self) -> None:
        """Restore persisted state; a failed read starts empty."""
        try:
            saved = await self._store.get(_NAMESPACE, _STATE_KEY)
        except errors.CapabilityError as exc:
            log.error("Fingerprint state load failed", {"error": str(exc)})
            return
        if not saved:
            return
        for domain, techniques in (saved.get("detectedTechniques") or {}).items():
            self._techniques.setdefault(domain, set()).update(techniques)
        for domain, counts in (saved.get("callCounts") or {}).items():
            self._call_counts[domain] = {k: int(v) for k, v in counts.items()}
        self._volume.load_state(saved.get("anomalyState"))
        log.info("Fingerprint state restored", {"domains": len(self._techniques)})

    async def save_state(self, force: bool = False) -> bool:
        """Persist when something changed since the last save."""
        if not (self._dirty or force):
            return False
        try:
            await self._store.set(_NAMESPACE, _STATE_KEY, self.export_state())
        except errors.CapabilityError as exc:
            log.error("Fingerprint state save failed", {"error": str(exc)})
            return False
        self._dirty = False
        return True
