"""Error hierarchy for TeachableX.

Core components raise these; the API layer maps them onto HTTP statuses.
"""

from __future__ import annotations

from enum import StrEnum


class TeachableXError(RuntimeError):
    """Base error for all TeachableX failures."""


class NotReady(TeachableXError):
    """A dependency (embedding model, capture source) is not loaded yet."""


class InvariantViolation(TeachableXError):
    """An operation would break a store invariant (e.g. the class-count floor)."""


class NotFound(TeachableXError):
    """A class id does not refer to an active class."""


class IndexOutOfRange(TeachableXError):
    """A sample index is outside the class's sample list."""


class ExtractionError(TeachableXError):
    """The embedding extractor rejected its input (undecodable or malformed image)."""


class EmbeddingFailed(TeachableXError):
    """A single sample could not be embedded; nothing was added to the store."""


class InsufficientClasses(TeachableXError):
    """Fewer than two classes have samples."""


class NoValidSamples(TeachableXError):
    """Every sample was skipped during dataset assembly."""


class AlreadyTraining(TeachableXError):
    """A training run is already in flight."""


class NotTrained(TeachableXError):
    """There is no trained model to use."""


class ModelDisposed(TeachableXError):
    """The model was released while a caller still held it."""


class CaptureUnavailable(TeachableXError):
    """The capture source could not deliver a frame."""


class PushNotSupported(TeachableXError):
    """Frames were pushed to a source that reads from a local device."""


class TrainingErrorCategory(StrEnum):
    DATA_SHAPE = "data_shape_error"
    RESOURCE = "resource_error"
    UNKNOWN = "unknown"


class TrainingError(TeachableXError):
    """Model build or fit failed."""

    def __init__(self, message: str, category: TrainingErrorCategory = TrainingErrorCategory.UNKNOWN) -> None:
        super().__init__(message)
        self.category = category


__all__ = [
    "AlreadyTraining",
    "CaptureUnavailable",
    "EmbeddingFailed",
    "ExtractionError",
    "IndexOutOfRange",
    "InsufficientClasses",
    "InvariantViolation",
    "ModelDisposed",
    "NoValidSamples",
    "NotFound",
    "NotReady",
    "NotTrained",
    "PushNotSupported",
    "TeachableXError",
    "TrainingError",
    "TrainingErrorCategory",
]
