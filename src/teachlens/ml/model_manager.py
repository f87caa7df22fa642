"""Model manager: locate or download the classifier files and open them.

Model files live in a local directory; when a HuggingFace repo is
configured they are downloaded there first. Sessions are built with the
execution provider matching the configured device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from teachlens.errors import ModelLoadError
from teachlens.ml.image_classifier import OnnxImageClassifier, load_metadata

if TYPE_CHECKING:
    from teachlens.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelFiles:
    """Resolved on-disk locations of the model and its label metadata."""

    model_path: Path
    metadata_path: Path


class OnnxModelManager:
    """Resolves model files and builds ONNX-backed classifiers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.model_dir)
        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self) -> ModelFiles:
        """Return the model files, downloading them from HuggingFace if configured.

        Raises:
            ModelLoadError: If the files cannot be downloaded or are missing.
        """
        settings = self._settings
        files = ModelFiles(
            model_path=self._models_dir / settings.model_filename,
            metadata_path=self._models_dir / settings.metadata_filename,
        )
        if settings.model_repo_id is not None and not (files.model_path.exists() and files.metadata_path.exists()):
            self._models_dir.mkdir(parents=True, exist_ok=True)
            try:
                files = ModelFiles(
                    model_path=self._download(settings.model_filename),
                    metadata_path=self._download(settings.metadata_filename),
                )
            except Exception as exc:
                raise ModelLoadError(f"Failed to download model from {settings.model_repo_id}: {exc}") from exc
            logger.info("Downloaded %s to %s", settings.model_repo_id, self._models_dir)

        for path in (files.model_path, files.metadata_path):
            if not path.is_file():
                raise ModelLoadError(f"Model file not found: {path}")
        return files

    def load_classifier(self) -> OnnxImageClassifier:
        """Open the model and its metadata as a ready-to-use classifier.

        Raises:
            ModelLoadError: If any file is missing, malformed, or rejected by onnxruntime.
        """
        files = self.ensure_downloaded()
        metadata = load_metadata(files.metadata_path)
        if metadata.image_size is not None and metadata.image_size != self._settings.image_size:
            logger.warning(
                "Model metadata expects %spx input but image_size is %spx",
                metadata.image_size,
                self._settings.image_size,
            )

        try:
            session = InferenceSession(
                str(files.model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Cannot open {files.model_path}: {exc}") from exc

        logger.info("Loaded %s with %d labels", files.model_path, len(metadata.labels))
        return OnnxImageClassifier(session=session, labels=metadata.labels)

    # -- Internal -----------------------------------------------------------

    def _download(self, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
