"""Tests for tracksentry.analysis.baseline: rolling z-score baselines."""

from __future__ import annotations

import math

import pytest

from tracksentry.analysis.baseline import Baseline


class TestBaseline:
    def test_no_score_below_min_points(self) -> None:
        baseline = Baseline()
        for value in (1, 1, 1, 50):
            baseline.add(value)
        assert baseline.anomaly_score(500) == 0.0

    def test_statistics(self) -> None:
        baseline = Baseline()
        for value in (2, 4, 4, 4, 5, 5, 7, 9):
            baseline.add(value)
        assert baseline.mean == 5.0
        assert baseline.std_dev == 2.0
        assert baseline.anomaly_score(9) == 2.0

    def test_zero_deviation(self) -> None:
        baseline = Baseline()
        for _ in range(5):
            baseline.add(3)
        assert baseline.anomaly_score(3) == 0.0
        assert math.isinf(baseline.anomaly_score(4))

    def test_is_anomaly_uses_strict_threshold(self) -> None:
        baseline = Baseline()
        for value in (2, 4, 4, 4, 5, 5, 7, 9):
            baseline.add(value)
        assert baseline.is_anomaly(9) is False
        assert baseline.is_anomaly(10) is True

    def test_window_is_bounded(self) -> None:
        baseline = Baseline(window=3)
        for value in (100, 1, 1, 1):
            baseline.add(value)
        assert len(baseline) == 3
        assert baseline.mean == 1.0

    def test_round_trip(self) -> None:
        baseline = Baseline()
        for value in (1, 2, 3):
            baseline.add(value)
        restored = Baseline()
        restored.load_state(baseline.export_state())
        assert restored.stats() == baseline.stats()

    def test_reset(self) -> None:
        baseline = Baseline()
        baseline.add(3)
        baseline.reset()
        assert baseline.stats().data_points == 0

    def test_rejects_empty_window(self) -> None:
        with pytest.raises(ValueError):
            Baseline(window=0)
