"""Environment-based configuration for TeachableX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from TEACHABLEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TEACHABLEX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Embedding extractor
    embedding_model: str = "dinov2_small"
    models_dir: str = "models"
    model_load_retries: int = Field(default=3, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Model management
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Class store
    initial_classes: int = Field(default=2, ge=2)

    # Training defaults (overridable per request)
    train_epochs: int = Field(default=50, ge=1)
    train_batch_size: int = Field(default=16, ge=1)
    train_validation_split: float = Field(default=0.2, ge=0.0, lt=1.0)
    train_learning_rate: float = Field(default=0.001, gt=0.0)
    train_hidden_units: int = Field(default=128, ge=1)
    train_dropout: float = Field(default=0.5, ge=0.0, lt=1.0)

    # Capture ("push" takes frames uploaded by a browser instead of a local camera)
    capture_source: Literal["camera", "push"] = "camera"
    camera_index: int = Field(default=0, ge=0)
    camera_width: int = Field(default=640, ge=1)
    camera_height: int = Field(default=480, ge=1)
    auto_capture_interval: float = Field(default=0.5, gt=0.0)
    predict_interval: float = Field(default=0.5, gt=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
