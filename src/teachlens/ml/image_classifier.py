"""Image classification model backed by an ONNX export of a Teachable Machine model."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from teachlens.errors import InferenceError, ModelLoadError
from teachlens.ml.preprocessing import to_input_tensor
from teachlens.ml.ranking import PredictionEntry

if TYPE_CHECKING:
    from onnxruntime import InferenceSession
    from PIL import Image


class ModelMetadata(BaseModel):
    """The subset of ``metadata.json`` the classifier relies on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    labels: list[str] = Field(min_length=1)
    image_size: int | None = Field(default=None, alias="imageSize")


def load_metadata(path: str | Path) -> ModelMetadata:
    """Read the label list from a metadata file.

    Raises:
        ModelLoadError: If the file is unreadable or has no label list.
    """
    try:
        return ModelMetadata.model_validate_json(Path(path).read_bytes())
    except (OSError, ValidationError) as exc:
        raise ModelLoadError(f"Invalid model metadata {path}: {exc}") from exc


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the class labels in model output order."""
        ...

    def predict(self, image: Image.Image) -> list[PredictionEntry]:
        """Classify a normalized image.

        Args:
            image: Square RGB image at the model's input size.

        Returns:
            One entry per label, in model output order (not sorted).

        Raises:
            InferenceError: If the model fails to run.
        """
        ...


class OnnxImageClassifier:
    """Runs a single-output softmax classifier through onnxruntime."""

    def __init__(self, session: InferenceSession, labels: list[str] | tuple[str, ...]) -> None:
        self._session = session
        self._labels = tuple(labels)
        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        shape: list[Any] = list(model_input.shape)
        # Keras exports are NHWC; anything with 3 in the channel slot is NCHW
        self._channels_first = len(shape) == 4 and shape[1] == 3

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def predict(self, image: Image.Image) -> list[PredictionEntry]:
        tensor = to_input_tensor(image)
        if self._channels_first:
            tensor = np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))

        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if scores.size != len(self._labels):
            raise InferenceError(f"Model returned {scores.size} scores for {len(self._labels)} labels")
        return [PredictionEntry(label=label, probability=float(score)) for label, score in zip(self._labels, scores)]
