"""Tests for prediction ranking."""

from __future__ import annotations

import math
import random
from dataclasses import FrozenInstanceError

import pytest

from teachlens.errors import EmptyPrediction
from teachlens.ml.ranking import PredictionEntry, RankedResult, rank


def _entries(*pairs: tuple[str, float]) -> list[PredictionEntry]:
    return [PredictionEntry(label=label, probability=p) for label, p in pairs]


class TestRank:
    def test_sorts_descending(self) -> None:
        result = rank(_entries(("A", 0.2), ("B", 0.7), ("C", 0.1)))
        assert [e.label for e in result] == ["B", "A", "C"]
        assert result.best == PredictionEntry("B", 0.7)

    def test_ties_keep_input_order(self) -> None:
        result = rank(_entries(("first", 0.3), ("high", 0.4), ("second", 0.3), ("third", 0.3)))
        assert [e.label for e in result] == ["high", "first", "second", "third"]

    def test_empty_input_raises(self) -> None:
        with pytest.raises(EmptyPrediction):
            rank([])

    def test_single_entry(self) -> None:
        result = rank(_entries(("only", 1.0)))
        assert len(result) == 1
        assert result.best is not None
        assert result.best.label == "only"

    def test_does_not_renormalize_or_clamp(self) -> None:
        result = rank(_entries(("a", 0.9), ("b", 0.9), ("c", 1.7), ("d", -0.2)))
        assert [e.probability for e in result] == [1.7, 0.9, 0.9, -0.2]

    def test_nan_passes_through(self) -> None:
        result = rank(_entries(("a", 0.5), ("b", math.nan)))
        assert len(result) == 2
        assert any(math.isnan(e.probability) for e in result)

    def test_result_is_immutable(self) -> None:
        result = rank(_entries(("a", 0.5)))
        assert isinstance(result.entries, tuple)
        with pytest.raises(FrozenInstanceError):
            result.entries = ()  # type: ignore[misc]

    def test_accepts_any_iterable(self) -> None:
        result = rank(iter(_entries(("a", 0.1), ("b", 0.2))))
        assert [e.label for e in result] == ["b", "a"]

    def test_random_inputs_sorted_permutation_and_stable(self) -> None:
        rng = random.Random(1234)
        for _ in range(50):
            raw = _entries(*((f"c{i}", rng.choice([0.0, 0.25, 0.5, 0.75, 1.0])) for i in range(rng.randint(1, 12))))
            result = rank(raw)

            probabilities = [e.probability for e in result]
            assert probabilities == sorted(probabilities, reverse=True)
            assert sorted(result.entries, key=lambda e: e.label) == sorted(raw, key=lambda e: e.label)
            for p in set(probabilities):
                in_input = [e.label for e in raw if e.probability == p]
                in_output = [e.label for e in result if e.probability == p]
                assert in_input == in_output


class TestRankedResult:
    def test_best_is_none_when_empty(self) -> None:
        assert RankedResult(entries=()).best is None
