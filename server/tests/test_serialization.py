"""Tests for tracksentry.utils.serialization and the camelCase model base."""

from __future__ import annotations

import math

import pytest

from tracksentry.models.patterns import AnomalyAlert
from tracksentry.models.requests import RequestVerdict
from tracksentry.utils.serialization import snake_to_camel, to_jsonable


class TestSnakeToCamel:
    @pytest.mark.parametrize(
        ("input_str", "expected"),
        [
            ("my_field_name", "myFieldName"),
            ("single", "single"),
            ("sites_tracked", "sitesTracked"),
            ("a_b_c", "aBC"),
            ("", ""),
        ],
    )
    def test_conversion(self, input_str: str, expected: str) -> None:
        assert snake_to_camel(input_str) == expected


class TestToJsonable:
    def test_sets_become_sorted_lists(self) -> None:
        assert to_jsonable({"a": {"z", "b"}}) == {"a": ["b", "z"]}

    def test_tuples_become_lists(self) -> None:
        assert to_jsonable((1, (2, 3))) == [1, [2, 3]]

    def test_keys_are_stringified(self) -> None:
        assert to_jsonable({1: "x"}) == {"1": "x"}


class TestCamelModel:
    def test_dump_by_alias(self) -> None:
        verdict = RequestVerdict(session_id="s", effective_mode="block")
        dumped = verdict.model_dump(by_alias=True)
        assert dumped["sessionId"] == "s"
        assert dumped["effectiveMode"] == "block"

    def test_populate_by_alias(self) -> None:
        verdict = RequestVerdict.model_validate({"sessionId": "s", "riskScore": 42})
        assert verdict.risk_score == 42

    def test_infinite_score_dumps_as_null(self) -> None:
        alert = AnomalyAlert(type="high_tracker_count", severity="warning", message="m", score=math.inf)
        assert alert.model_dump(mode="json")["score"] is None
