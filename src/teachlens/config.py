"""Environment-based configuration for TeachLens."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from TEACHLENS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TEACHLENS_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model location: local directory, optionally filled from a HuggingFace repo
    model_dir: str = "model"
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"
    metadata_filename: str = "metadata.json"

    # Classifier input geometry
    image_size: int = Field(default=224, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # History
    history_path: str = "data/history.json"
    history_key: str = "tm-image-history-v1"
    max_history: int = Field(default=10, ge=1)
    thumbnail_size: int = Field(default=128, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
