"""Classification orchestration.

A classification is a linear pipeline of awaited stages::

    Idle -> Decoding -> Normalizing -> Predicting -> Ranking -> Completed

Any stage may short-circuit to ``Failed(kind)``. Shared state (classifier,
readiness, last result, current display, history) lives on an explicit
``SessionContext`` created once at startup.

Overlapping requests are not cancelled. Each session takes an increasing id
and only the most recently started session may apply its results to the
shared state; results of older sessions are returned to their caller and
otherwise discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING

from teachlens.errors import (
    EmptyPrediction,
    FailureKind,
    InferenceError,
    ModelLoadError,
    ModelNotReady,
    NotAnImage,
    ServerBusy,
    TeachLensError,
)
from teachlens.ml.ranking import rank

if TYPE_CHECKING:
    from collections.abc import Callable

    from PIL import Image

    from teachlens.history import HistoryStore
    from teachlens.ml.image_classifier import ImageClassifier
    from teachlens.ml.inference import InferencePool
    from teachlens.ml.model_manager import OnnxModelManager
    from teachlens.ml.preprocessing import ImageNormalizer
    from teachlens.ml.ranking import PredictionEntry, RankedResult

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    DECODING = "decoding"
    NORMALIZING = "normalizing"
    PREDICTING = "predicting"
    RANKING = "ranking"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class LastResult:
    """Most recent applied result, kept for copy and export."""

    result: RankedResult
    timestamp: str


@dataclass(frozen=True)
class SessionOutcome:
    """Terminal state of one classification session."""

    session_id: int
    state: SessionState
    result: RankedResult | None = None
    timestamp: str | None = None
    failure: FailureKind | None = None
    message: str | None = None
    applied: bool = False

    @property
    def ok(self) -> bool:
        return self.state is SessionState.COMPLETED


@dataclass
class SessionContext:
    """Process-wide state shared by all sessions."""

    history: HistoryStore
    classifier: ImageClassifier | None = None
    model_error: str | None = None
    last_result: LastResult | None = None
    display: RankedResult | None = None
    current_session_id: int = 0

    @property
    def model_ready(self) -> bool:
        return self.classifier is not None

    def begin_session(self) -> int:
        self.current_session_id += 1
        return self.current_session_id

    def is_current(self, session_id: int) -> bool:
        return session_id == self.current_session_id


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClassificationSession:
    """Runs classifications against a shared ``SessionContext``."""

    def __init__(
        self,
        context: SessionContext,
        normalizer: ImageNormalizer,
        pool: InferencePool,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.context = context
        self._normalizer = normalizer
        self._pool = pool
        self._clock = clock

    async def load_model(self, manager: OnnxModelManager) -> bool:
        """Load the classifier off the event loop and mark the context ready.

        A load failure is recorded on the context and logged; it never raises.
        """
        try:
            classifier = await self._pool.run(manager.load_classifier)
        except ModelLoadError as exc:
            self.context.model_error = exc.message
            logger.error("Model load failed: %s", exc.message)
            return False
        except Exception as exc:
            self.context.model_error = ModelLoadError().message
            logger.exception("Model load failed: %s", exc)
            return False
        self.context.classifier = classifier
        self.context.model_error = None
        logger.info("Model ready (%d labels)", len(classifier.labels))
        return True

    async def classify(self, image_bytes: bytes, content_type: str | None) -> SessionOutcome:
        """Run one session over an uploaded file.

        Never raises for pipeline errors: every failure becomes a ``Failed``
        outcome carrying a user-visible message.
        """
        session_id = self.context.begin_session()
        state = SessionState.IDLE
        try:
            if not content_type or not content_type.startswith("image/"):
                raise NotAnImage()

            state = SessionState.DECODING
            image = await self._pool.run(self._normalizer.decode, image_bytes)

            state = SessionState.NORMALIZING
            try:
                normalized, thumbnail = await self._pool.run(self._prepare, image)
            finally:
                image.close()

            try:
                classifier = self.context.classifier
                if classifier is None:
                    raise ModelNotReady()
                state = SessionState.PREDICTING
                raw: list[PredictionEntry] = await self._pool.run(classifier.predict, normalized)
            finally:
                normalized.close()

            state = SessionState.RANKING
            result = rank(raw)
        except TeachLensError as exc:
            logger.warning("Session %d failed while %s: %s", session_id, state, exc.message)
            return self._fail(session_id, exc)
        except TimeoutError:
            logger.warning("Session %d: no worker free while %s", session_id, state)
            return self._fail(session_id, ServerBusy())
        except Exception:
            logger.exception("Session %d: unexpected error while %s", session_id, state)
            return self._fail(session_id, InferenceError())

        return self._complete(session_id, result, thumbnail)

    def _prepare(self, image: Image.Image) -> tuple[Image.Image, str]:
        return self._normalizer.normalize(image), self._normalizer.thumbnail(image)

    def _complete(self, session_id: int, result: RankedResult, thumbnail: str) -> SessionOutcome:
        timestamp = self._clock().isoformat()
        best = result.best
        if best is None:
            return self._fail(session_id, EmptyPrediction())

        if not self.context.is_current(session_id):
            logger.info(
                "Session %d superseded by %d, discarding result",
                session_id,
                self.context.current_session_id,
            )
            return SessionOutcome(session_id, SessionState.COMPLETED, result=result, timestamp=timestamp)

        self.context.display = result
        self.context.last_result = LastResult(result=result, timestamp=timestamp)
        self.context.history.append(thumbnail, best.label, best.probability, timestamp)
        logger.info("Session %d: %s (%.4f)", session_id, best.label, best.probability)
        return SessionOutcome(
            session_id,
            SessionState.COMPLETED,
            result=result,
            timestamp=timestamp,
            applied=True,
        )

    def _fail(self, session_id: int, error: TeachLensError) -> SessionOutcome:
        applied = self.context.is_current(session_id)
        if applied:
            # No stale probability bars after a failure
            self.context.display = None
        return SessionOutcome(
            session_id,
            SessionState.FAILED,
            failure=error.kind,
            message=error.message,
            applied=applied,
        )
