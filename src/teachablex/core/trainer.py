"""Trainer: owns the classification head's lifecycle.

State machine::

    idle -> building -> fitting -> trained
                     \\         \\-> failed
                      \\-> failed

Only one run may be in flight. ``start`` takes the single-flight guard on the
caller's thread, so a second call while building or fitting is rejected
immediately with ``AlreadyTraining``; the run itself executes on the
trainer's own worker thread.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from teachablex.errors import AlreadyTraining, NotTrained, TrainingError, TrainingErrorCategory

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    import numpy as np
    from numpy.typing import NDArray

    from teachablex.config import Settings
    from teachablex.core.dataset import TrainingSet

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrainingConfig:
    """Hyperparameters for one training run."""

    epochs: int = 50
    batch_size: int = 16
    validation_split: float = 0.2
    learning_rate: float = 0.001
    hidden_units: int = 128
    dropout: float = 0.5
    shuffle: bool = True
    seed: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TrainingConfig:
        return cls(
            epochs=settings.train_epochs,
            batch_size=settings.train_batch_size,
            validation_split=settings.train_validation_split,
            learning_rate=settings.train_learning_rate,
            hidden_units=settings.train_hidden_units,
            dropout=settings.train_dropout,
        )

    def with_overrides(self, **overrides: object) -> TrainingConfig:
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)  # type: ignore[arg-type]

    def __post_init__(self) -> None:
        if self.epochs < 1:
            raise ValueError("epochs must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not 0.0 <= self.validation_split < 1.0:
            raise ValueError("validation_split must be in [0, 1)")


@dataclass(frozen=True)
class EpochMetrics:
    epoch: int
    loss: float
    accuracy: float
    val_loss: float | None = None
    val_accuracy: float | None = None


@dataclass(frozen=True)
class FitResult:
    """Outcome of a completed fit."""

    epochs: int
    train_samples: int
    validation_samples: int
    history: tuple[EpochMetrics, ...] = ()

    @property
    def accuracy(self) -> float | None:
        return self.history[-1].accuracy if self.history else None

    @property
    def val_accuracy(self) -> float | None:
        return self.history[-1].val_accuracy if self.history else None


# ---------------------------------------------------------------------------
# Trainable head contract
# ---------------------------------------------------------------------------


class HeadModel(Protocol):
    """A fitted (or fittable) classification head."""

    def fit(
        self,
        features: NDArray[np.float32],
        labels: NDArray[np.int64],
        config: TrainingConfig,
        on_epoch: Callable[[int, float], None],
    ) -> FitResult:
        """Run the optimization loop, calling ``on_epoch`` after every epoch."""
        ...

    def predict(self, vector: NDArray[np.float32]) -> NDArray[np.float32]:
        """Return class probabilities for one embedding."""
        ...

    def save(self, destination: Path, class_names: tuple[str, ...]) -> Path:
        """Serialize the model to ``destination``."""
        ...

    def dispose(self) -> None:
        """Release the model's resources. Idempotent."""
        ...


class HeadFactory(Protocol):
    def build(self, input_dim: int, num_classes: int, config: TrainingConfig) -> HeadModel:
        """Construct an untrained head."""
        ...


# ---------------------------------------------------------------------------
# Trainer
# ---------------------------------------------------------------------------


class TrainerState(StrEnum):
    IDLE = "idle"
    BUILDING = "building"
    FITTING = "fitting"
    TRAINED = "trained"
    FAILED = "failed"


_IN_FLIGHT = frozenset({TrainerState.BUILDING, TrainerState.FITTING})


@dataclass(frozen=True)
class TrainingProgress:
    epoch: int
    epochs: int
    accuracy: float

    @property
    def fraction(self) -> float:
        return self.epoch / self.epochs if self.epochs else 0.0


@dataclass(frozen=True)
class TrainedModel:
    """A fitted head with the class ordering it was trained on."""

    model: HeadModel
    class_names: tuple[str, ...]
    result: FitResult = field(compare=False)


def classify_failure(exc: BaseException) -> TrainingErrorCategory:
    """Map a build/fit exception onto a coarse category."""
    if isinstance(exc, MemoryError):
        return TrainingErrorCategory.RESOURCE
    message = str(exc).lower()
    if "out of memory" in message:
        return TrainingErrorCategory.RESOURCE
    if isinstance(exc, (ValueError, IndexError)) or "shape" in message or "size mismatch" in message:
        return TrainingErrorCategory.DATA_SHAPE
    return TrainingErrorCategory.UNKNOWN


class Trainer:
    """Builds, fits, and retains the classification head."""

    def __init__(self, head_factory: HeadFactory) -> None:
        self._head_factory = head_factory
        self._lock = threading.Lock()
        self._state = TrainerState.IDLE
        self._trained: TrainedModel | None = None
        self._progress: TrainingProgress | None = None
        self._last_error: TrainingError | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="trainer")

    # -- Introspection --------------------------------------------------------

    @property
    def state(self) -> TrainerState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> TrainingProgress | None:
        with self._lock:
            return self._progress

    @property
    def last_error(self) -> TrainingError | None:
        with self._lock:
            return self._last_error

    @property
    def is_training(self) -> bool:
        return self.state in _IN_FLIGHT

    def snapshot(self) -> TrainedModel | None:
        """Return the current trained model, or None."""
        with self._lock:
            return self._trained

    # -- Commands -------------------------------------------------------------

    def start(
        self,
        training_set: TrainingSet,
        config: TrainingConfig | None = None,
        on_epoch: Callable[[int, float], None] | None = None,
    ) -> Future[TrainedModel]:
        """Begin a training run in the background.

        Raises:
            AlreadyTraining: If a run is building or fitting.
        """
        config = config or TrainingConfig()
        with self._lock:
            if self._state in _IN_FLIGHT:
                raise AlreadyTraining(f"Training already in progress ({self._state})")
            self._state = TrainerState.BUILDING
            self._progress = TrainingProgress(epoch=0, epochs=config.epochs, accuracy=0.0)
            self._last_error = None

        try:
            return self._executor.submit(self._run, training_set, config, on_epoch)
        except RuntimeError:
            with self._lock:
                self._state = TrainerState.IDLE
            raise

    def train(
        self,
        training_set: TrainingSet,
        config: TrainingConfig | None = None,
        on_epoch: Callable[[int, float], None] | None = None,
    ) -> TrainedModel:
        """Run a training run to completion on the trainer thread."""
        return self.start(training_set, config, on_epoch).result()

    def dispose(self) -> None:
        """Release the trained model. Valid from any state; idempotent.

        An in-flight run keeps its own model and finishes normally.
        """
        with self._lock:
            trained = self._trained
            self._trained = None
            if self._state not in _IN_FLIGHT:
                self._state = TrainerState.IDLE
                self._progress = None
        if trained is not None:
            trained.model.dispose()
            logger.info("Disposed trained model (%d classes)", len(trained.class_names))

    def export(self, destination: Path) -> Path:
        """Write the trained model with the head library's own serializer.

        Raises:
            NotTrained: If no model has been trained.
        """
        trained = self.snapshot()
        if trained is None:
            raise NotTrained("No trained model to export")
        path = trained.model.save(destination, trained.class_names)
        logger.info("Exported model to %s", path)
        return path

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self.dispose()

    # -- Internal -------------------------------------------------------------

    def _run(
        self,
        training_set: TrainingSet,
        config: TrainingConfig,
        on_epoch: Callable[[int, float], None] | None,
    ) -> TrainedModel:
        with self._lock:
            previous = self._trained
            self._trained = None
        if previous is not None:
            previous.model.dispose()
            logger.info("Disposed previous model before retraining")

        model: HeadModel | None = None
        try:
            model = self._head_factory.build(training_set.dimension, training_set.num_classes, config)
            with self._lock:
                self._state = TrainerState.FITTING
            logger.info(
                "Training on %d samples, %d classes, dim=%d (epochs=%d, batch_size=%d, validation_split=%.2f)",
                training_set.num_samples,
                training_set.num_classes,
                training_set.dimension,
                config.epochs,
                config.batch_size,
                config.validation_split,
            )
            result = model.fit(
                training_set.features,
                training_set.labels,
                config,
                self._epoch_hook(config, on_epoch),
            )
        except Exception as exc:
            if model is not None:
                model.dispose()
            error = TrainingError(f"Training failed: {exc}", category=classify_failure(exc))
            with self._lock:
                self._state = TrainerState.FAILED
                self._last_error = error
            logger.exception("Training failed (%s)", error.category)
            raise error from exc

        trained = TrainedModel(model=model, class_names=tuple(training_set.class_names), result=result)
        with self._lock:
            self._trained = trained
            self._state = TrainerState.TRAINED
        logger.info(
            "Training complete: accuracy=%s val_accuracy=%s",
            _fmt(result.accuracy),
            _fmt(result.val_accuracy),
        )
        return trained

    def _epoch_hook(
        self,
        config: TrainingConfig,
        on_epoch: Callable[[int, float], None] | None,
    ) -> Callable[[int, float], None]:
        def hook(epoch: int, accuracy: float) -> None:
            with self._lock:
                self._progress = TrainingProgress(epoch=epoch, epochs=config.epochs, accuracy=accuracy)
            logger.debug("Epoch %d/%d: accuracy=%.4f", epoch, config.epochs, accuracy)
            if on_epoch is None:
                return
            try:
                on_epoch(epoch, accuracy)
            except Exception:
                logger.warning("Progress callback failed at epoch %d", epoch, exc_info=True)

        return hook


def _fmt(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.4f}"
