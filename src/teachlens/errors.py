"""Error taxonomy for the classification pipeline.

Every classifier- and storage-boundary failure is converted into one of
these before it reaches the HTTP layer.
"""

from __future__ import annotations

from enum import StrEnum


class FailureKind(StrEnum):
    NOT_AN_IMAGE = "not_an_image"
    INVALID_IMAGE = "invalid_image"
    MODEL_NOT_READY = "model_not_ready"
    SERVER_BUSY = "server_busy"
    CLASSIFICATION_ERROR = "classification_error"


class TeachLensError(Exception):
    """Base class carrying a user-visible message and a failure kind."""

    kind: FailureKind = FailureKind.CLASSIFICATION_ERROR
    default_message: str = "An error occurred during prediction."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidImage(TeachLensError):
    kind = FailureKind.INVALID_IMAGE
    default_message = "The file could not be read as an image. Please choose another file."


class NotAnImage(InvalidImage):
    kind = FailureKind.NOT_AN_IMAGE
    default_message = "Only image files can be uploaded."


class ModelLoadError(TeachLensError):
    default_message = "Failed to load the model. Check the model path and files."


class ModelNotReady(TeachLensError):
    kind = FailureKind.MODEL_NOT_READY
    default_message = "The model is not ready yet. Please try again shortly."


class ServerBusy(TeachLensError):
    kind = FailureKind.SERVER_BUSY
    default_message = "The server is busy. Please try again shortly."


class EmptyPrediction(TeachLensError):
    default_message = "The classifier returned no predictions."


class InferenceError(TeachLensError):
    default_message = "An error occurred during prediction."


class PersistenceError(TeachLensError):
    """History could not be read or written. Logged only, never surfaced."""

    default_message = "History storage is unavailable."
