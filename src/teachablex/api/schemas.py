"""Pydantic request/response schemas for the TeachableX API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassInfo(BaseModel):
    """An active class and how many samples it holds."""

    id: int
    name: str
    sample_count: int


class ClassesResponse(BaseModel):
    classes: list[ClassInfo]


class CreateClassRequest(BaseModel):
    name: str | None = Field(default=None, description="Initial name; defaults to 'Class N'")


class RenameClassRequest(BaseModel):
    name: str = Field(description="New name; may be empty")


class FailedUpload(BaseModel):
    filename: str
    detail: str


class UploadResponse(BaseModel):
    """Outcome of a multi-file upload to one class."""

    class_id: int
    added: list[int] = Field(description="Indices of the samples that were added")
    failed: list[FailedUpload]
    sample_count: int


class CaptureResponse(BaseModel):
    class_id: int
    index: int
    captured: int = Field(description="Frames captured since the session opened")


class AutoCaptureResponse(BaseModel):
    class_id: int
    running: bool
    captured: int


class StatsResponse(BaseModel):
    class_count: int
    total_images: int
    ready_for_training: bool
    trainer_state: str
    trained: bool
    accuracy: float | None = None


class TrainRequest(BaseModel):
    """Per-run overrides; omitted fields use the configured defaults."""

    epochs: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1)
    validation_split: float | None = Field(default=None, ge=0.0, lt=1.0)
    learning_rate: float | None = Field(default=None, gt=0.0)
    hidden_units: int | None = Field(default=None, ge=1)
    dropout: float | None = Field(default=None, ge=0.0, lt=1.0)
    seed: int | None = None


class TrainingProgressInfo(BaseModel):
    epoch: int
    epochs: int
    accuracy: float = Field(ge=0.0, le=1.0)


class TrainingStatusResponse(BaseModel):
    state: str
    progress: TrainingProgressInfo | None = None
    class_names: list[str] = Field(default_factory=list)
    accuracy: float | None = None
    val_accuracy: float | None = None
    error: str | None = None
    error_category: str | None = None


class PredictionItem(BaseModel):
    """A single class with its confidence."""

    class_name: str
    confidence: float = Field(ge=0.0, le=1.0)


class PredictResponse(BaseModel):
    predictions: list[PredictionItem]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    embedder_ready: bool
    embedding_model: str
    models_loaded: list[str]
    trainer_state: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available embedding model."""

    name: str
    repo_id: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
