"""Pydantic request/response schemas for the TeachLens API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from teachlens.reporting import format_timestamp, to_display_percent

if TYPE_CHECKING:
    from teachlens.history import HistoryEntry
    from teachlens.ml.ranking import PredictionEntry, RankedResult


class Prediction(BaseModel):
    """A single class probability, with its display string."""

    label: str
    probability: float = Field(description="Raw classifier probability, never renormalized")
    percent: str = Field(description="Probability as a one-decimal percentage, e.g. '70.0%'")

    @classmethod
    def from_entry(cls, entry: PredictionEntry) -> Prediction:
        return cls(label=entry.label, probability=entry.probability, percent=to_display_percent(entry.probability))


def predictions_from(result: RankedResult) -> list[Prediction]:
    return [Prediction.from_entry(entry) for entry in result]


class ClassifyResponse(BaseModel):
    """Response for the classification endpoint."""

    session_id: int
    best: Prediction
    predictions: list[Prediction]
    timestamp: str
    applied: bool = Field(description="False when a newer submission superseded this one")


class DisplayResponse(BaseModel):
    """The probabilities currently shown; empty after a failed classification."""

    predictions: list[Prediction]


class LastResultResponse(BaseModel):
    """The most recent classification, as used for copy and export."""

    best: Prediction
    predictions: list[Prediction]
    timestamp: str
    analyzed_at: str


class HistoryItem(BaseModel):
    """A history entry with display-ready fields."""

    id: str
    thumbnail: str
    best_label: str
    best_probability: float
    percent: str
    timestamp: str
    analyzed_at: str

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> HistoryItem:
        return cls(
            id=entry.id,
            thumbnail=entry.thumbnail,
            best_label=entry.best_label,
            best_probability=entry.best_probability,
            percent=to_display_percent(entry.best_probability),
            timestamp=entry.timestamp,
            analyzed_at=format_timestamp(entry.timestamp),
        )


class HistoryResponse(BaseModel):
    """Newest-first history listing."""

    items: list[HistoryItem]
    max_items: int


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    model_ready: bool
    model_error: str | None = None
    labels: list[str]
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
