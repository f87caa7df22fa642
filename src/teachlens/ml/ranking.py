"""Ordering of raw classifier output."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from teachlens.errors import EmptyPrediction

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


@dataclass(frozen=True)
class PredictionEntry:
    """A single classifier output row."""

    label: str
    probability: float


@dataclass(frozen=True)
class RankedResult:
    """Probability-descending, immutable view of one classification.

    Probabilities are kept exactly as the classifier reported them: no
    clamping, no renormalization.
    """

    entries: tuple[PredictionEntry, ...]

    @property
    def best(self) -> PredictionEntry | None:
        return self.entries[0] if self.entries else None

    def __iter__(self) -> Iterator[PredictionEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def rank(raw: Iterable[PredictionEntry]) -> RankedResult:
    """Stable descending sort on probability; ties keep their input order.

    Raises:
        EmptyPrediction: If ``raw`` contains no entries.
    """
    entries = list(raw)
    if not entries:
        raise EmptyPrediction()
    # sorted() is stable, and reverse=True preserves the original order of equal keys
    return RankedResult(entries=tuple(sorted(entries, key=lambda entry: entry.probability, reverse=True)))
