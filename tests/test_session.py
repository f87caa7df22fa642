"""Tests for the classification orchestrator."""

from __future__ import annotations

import asyncio
import io
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest
from PIL import Image

from teachlens.errors import FailureKind, InferenceError, ModelLoadError
from teachlens.history import HistoryStore, MemoryStore
from teachlens.ml.inference import InferencePool
from teachlens.ml.preprocessing import ImageNormalizer
from teachlens.ml.ranking import PredictionEntry, RankedResult
from teachlens.reporting import to_report_text
from teachlens.session import ClassificationSession, SessionContext, SessionState

if TYPE_CHECKING:
    from collections.abc import Iterator

FIXED_TIME = datetime(2024, 5, 1, 9, 7, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClassifier:
    """Returns canned predictions and records the images it receives."""

    def __init__(self, predictions: list[PredictionEntry] | None = None, error: Exception | None = None) -> None:
        self.predictions = predictions if predictions is not None else [
            PredictionEntry("A", 0.2),
            PredictionEntry("B", 0.7),
            PredictionEntry("C", 0.1),
        ]
        self.error = error
        self.sizes: list[tuple[int, int]] = []

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(p.label for p in self.predictions)

    def predict(self, image: Image.Image) -> list[PredictionEntry]:
        self.sizes.append(image.size)
        if self.error is not None:
            raise self.error
        return list(self.predictions)


def _png(width: int = 400, height: int = 200, color: tuple[int, int, int] = (200, 10, 10)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(max_concurrent=2)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def backing() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def session(pool: InferencePool, backing: MemoryStore) -> ClassificationSession:
    context = SessionContext(history=HistoryStore(backing), classifier=FakeClassifier())
    normalizer = ImageNormalizer(target_size=224, max_pixels=10_000_000, thumbnail_size=32)
    return ClassificationSession(context, normalizer, pool, clock=lambda: FIXED_TIME)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCompletedSession:
    async def test_ranks_and_applies_result(self, session: ClassificationSession) -> None:
        outcome = await session.classify(_png(), "image/png")

        assert outcome.ok
        assert outcome.state is SessionState.COMPLETED
        assert outcome.applied
        assert outcome.result is not None
        assert [e.label for e in outcome.result] == ["B", "A", "C"]
        assert outcome.timestamp == FIXED_TIME.isoformat()

        context = session.context
        assert context.display == outcome.result
        assert context.last_result is not None
        assert context.last_result.result == outcome.result
        assert context.last_result.timestamp == FIXED_TIME.isoformat()

    async def test_classifier_receives_normalized_square(self, session: ClassificationSession) -> None:
        await session.classify(_png(400, 200), "image/png")
        classifier = session.context.classifier
        assert isinstance(classifier, FakeClassifier)
        assert classifier.sizes == [(224, 224)]

    async def test_appends_history(self, session: ClassificationSession) -> None:
        await session.classify(_png(), "image/jpeg")
        entries = session.context.history.list()

        assert len(entries) == 1
        assert entries[0].best_label == "B"
        assert entries[0].best_probability == 0.7
        assert entries[0].timestamp == FIXED_TIME.isoformat()
        assert entries[0].thumbnail.startswith("data:image/jpeg;base64,")

    async def test_report_second_line(self, session: ClassificationSession) -> None:
        await session.classify(_png(), "image/png")
        last = session.context.last_result
        assert last is not None
        assert to_report_text(last.result, last.timestamp).splitlines()[1] == "Top: B (70.0%)"

    async def test_storage_error_keeps_history_in_memory(
        self, session: ClassificationSession, backing: MemoryStore
    ) -> None:
        def broken_set(key: str, value: str) -> None:
            raise RuntimeError("disk vanished")

        backing.set = broken_set  # type: ignore[method-assign]
        outcome = await session.classify(_png(), "image/png")

        assert outcome.state is SessionState.COMPLETED
        assert outcome.applied
        assert [e.best_label for e in session.context.history.list()] == ["B"]
        assert session.context.last_result is not None

    async def test_history_stays_capped(self, session: ClassificationSession) -> None:
        for _ in range(12):
            await session.classify(_png(), "image/png")
        assert len(session.context.history.list()) == session.context.history.max_history


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailedSession:
    async def test_non_image_content_type(self, session: ClassificationSession) -> None:
        outcome = await session.classify(b"hello", "text/plain")
        assert outcome.state is SessionState.FAILED
        assert outcome.failure is FailureKind.NOT_AN_IMAGE
        assert outcome.message

    async def test_missing_content_type(self, session: ClassificationSession) -> None:
        outcome = await session.classify(_png(), None)
        assert outcome.failure is FailureKind.NOT_AN_IMAGE

    async def test_undecodable_image(self, session: ClassificationSession) -> None:
        outcome = await session.classify(b"not really a png", "image/png")
        assert outcome.failure is FailureKind.INVALID_IMAGE
        assert session.context.history.list() == ()

    async def test_model_not_ready(self, session: ClassificationSession) -> None:
        session.context.classifier = None
        outcome = await session.classify(_png(), "image/png")

        assert outcome.failure is FailureKind.MODEL_NOT_READY
        assert session.context.last_result is None

    async def test_model_not_ready_recovers(self, session: ClassificationSession) -> None:
        classifier = session.context.classifier
        session.context.classifier = None
        assert not (await session.classify(_png(), "image/png")).ok

        session.context.classifier = classifier
        assert (await session.classify(_png(), "image/png")).ok

    async def test_empty_prediction_clears_display(self, session: ClassificationSession) -> None:
        await session.classify(_png(), "image/png")
        assert session.context.display is not None

        session.context.classifier = FakeClassifier(predictions=[])
        outcome = await session.classify(_png(), "image/png")

        assert outcome.failure is FailureKind.CLASSIFICATION_ERROR
        assert session.context.display is None
        # Last result and history keep the previous success.
        assert session.context.last_result is not None
        assert len(session.context.history.list()) == 1

    async def test_inference_error(self, session: ClassificationSession) -> None:
        session.context.classifier = FakeClassifier(error=InferenceError("boom"))
        outcome = await session.classify(_png(), "image/png")
        assert outcome.failure is FailureKind.CLASSIFICATION_ERROR
        assert outcome.message == "boom"

    async def test_unexpected_error_is_contained(self, session: ClassificationSession) -> None:
        session.context.classifier = FakeClassifier(error=RuntimeError("kaboom"))
        outcome = await session.classify(_png(), "image/png")

        assert outcome.state is SessionState.FAILED
        assert outcome.failure is FailureKind.CLASSIFICATION_ERROR
        assert "kaboom" not in (outcome.message or "")

    async def test_busy_pool_reports_server_busy(self, backing: MemoryStore) -> None:
        pool = InferencePool(max_concurrent=1, timeout=0.05)
        session = ClassificationSession(
            SessionContext(history=HistoryStore(backing), classifier=FakeClassifier()),
            ImageNormalizer(224, 10_000_000, 32),
            pool,
        )
        await pool._semaphore.acquire()
        try:
            outcome = await session.classify(_png(), "image/png")
        finally:
            pool._semaphore.release()
            pool.shutdown()

        assert outcome.state is SessionState.FAILED
        assert outcome.failure is FailureKind.SERVER_BUSY
        assert outcome.message
        assert session.context.history.list() == ()

    async def test_empty_ranked_result_fails_instead_of_completing(self, session: ClassificationSession) -> None:
        session_id = session.context.begin_session()
        outcome = session._complete(session_id, RankedResult(()), "thumb")

        assert outcome.failure is FailureKind.CLASSIFICATION_ERROR
        assert session.context.last_result is None
        assert session.context.history.list() == ()


# ---------------------------------------------------------------------------
# Overlapping sessions
# ---------------------------------------------------------------------------


class GatedClassifier(FakeClassifier):
    """First call blocks until released, later calls answer immediately."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
        self._calls = 0
        self._lock = threading.Lock()

    def predict(self, image: Image.Image) -> list[PredictionEntry]:
        with self._lock:
            self._calls += 1
            call = self._calls
        if call == 1:
            self.started.set()
            self.release.wait(timeout=5)
            return [PredictionEntry("slow", 0.9), PredictionEntry("other", 0.1)]
        return [PredictionEntry("fast", 0.8), PredictionEntry("other", 0.2)]


class TestOverlappingSessions:
    async def test_last_submitted_wins(self, session: ClassificationSession) -> None:
        classifier = GatedClassifier()
        session.context.classifier = classifier

        first = asyncio.create_task(session.classify(_png(), "image/png"))
        assert await asyncio.to_thread(classifier.started.wait, 5)

        second = await session.classify(_png(), "image/png")
        classifier.release.set()
        first_outcome = await first

        assert second.applied
        assert not first_outcome.applied
        assert first_outcome.ok
        assert first_outcome.result is not None
        assert first_outcome.result.best is not None
        assert first_outcome.result.best.label == "slow"

        context = session.context
        assert context.display == second.result
        assert context.last_result is not None
        assert context.last_result.result == second.result
        assert [e.best_label for e in context.history.list()] == ["fast"]

    async def test_stale_failure_keeps_display(self, session: ClassificationSession) -> None:
        await session.classify(_png(), "image/png")
        displayed = session.context.display

        # Simulate a newer session having started meanwhile.
        session_id = session.context.begin_session()
        outcome = session._fail(session_id - 1, InferenceError())

        assert not outcome.applied
        assert session.context.display == displayed


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------


class TestLoadModel:
    async def test_marks_ready(self, pool: InferencePool) -> None:
        session = ClassificationSession(
            SessionContext(history=HistoryStore(MemoryStore())),
            ImageNormalizer(224, 10_000_000, 32),
            pool,
        )
        manager = MagicMock()
        manager.load_classifier.return_value = FakeClassifier()

        assert await session.load_model(manager)
        assert session.context.model_ready
        assert session.context.model_error is None

    async def test_failure_is_recorded(self, pool: InferencePool) -> None:
        session = ClassificationSession(
            SessionContext(history=HistoryStore(MemoryStore())),
            ImageNormalizer(224, 10_000_000, 32),
            pool,
        )
        manager = MagicMock()
        manager.load_classifier.side_effect = ModelLoadError("no model.onnx")

        assert not await session.load_model(manager)
        assert not session.context.model_ready
        assert session.context.model_error == "no model.onnx"
