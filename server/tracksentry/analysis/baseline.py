"""Rolling statistical baseline for z-score anomaly detection.

Keeps the last ``window`` values of one metric together with
their mean and population standard deviation, recomputed on
every insertion.
"""

from __future__ import annotations

import collections
import math
from typing import Any

from tracksentry.models.patterns import BaselineStats

DEFAULT_MIN_POINTS = 5


class Baseline:
    """Bounded window of recent values for one metric."""

    def __init__(self, window: int = 100, min_points: int = DEFAULT_MIN_POINTS) -> None:
        if window < 1:
            raise ValueError("window must be positive")
        self.window = window
        self.min_points = min_points
        self._points: collections.deque[float] = collections.deque(maxlen=window)
        self.mean = 0.0
        self.std_dev = 0.0

    def __len__(self) -> int:
        return len(self._points)

    def add(self, value: float) -> None:
        """Append a value and recompute the statistics."""
        self._points.append(float(value))
        self._recompute()

    def _recompute(self) -> None:
        n = len(self._points)
        if n == 0:
            self.mean = 0.0
            self.std_dev = 0.0
            return
        self.mean = sum(self._points) / n
        self.std_dev = math.sqrt(sum((x - self.mean) ** 2 for x in self._points) / n)

    def anomaly_score(self, value: float) -> float:
        """``|value - mean| / stddev`` against the current window.

        Returns 0 until ``min_points`` values have been seen.  A
        zero deviation with a differing value is a maximal
        anomaly (``inf``); with an equal value it is 0.
        """
        if len(self._points) < self.min_points:
            return 0.0
        delta = abs(value - self.mean)
        if self.std_dev == 0:
            return math.inf if delta > 0 else 0.0
        return delta / self.std_dev

    def is_anomaly(self, value: float, threshold: float = 2.0) -> bool:
        return self.anomaly_score(value) > threshold

    def stats(self) -> BaselineStats:
        return BaselineStats(mean=self.mean, std_dev=self.std_dev, data_points=len(self._points))

    def export_state(self) -> dict[str, Any]:
        return {"dataPoints": list(self._points), "mean": self.mean, "stdDev": self.std_dev}

    def load_state(self, state: dict[str, Any] | None) -> None:
        """Restore from :meth:`export_state`; statistics are re-derived."""
        if not state:
            return
        points = state.get("dataPoints") or []
        self._points = collections.deque((float(p) for p in points), maxlen=self.window)
        self._recompute()

    def reset(self) -> None:
        self._points.clear()
        self._recompute()
