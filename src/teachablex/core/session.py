"""Teaching session: the command interface a front end drives.

Owns the store, dataset builder, trainer, classifier, and any open capture or
live-prediction sessions. All cross-component reads go through this object.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from teachablex.core.capture import CaptureSession, PredictionStream
from teachablex.core.classifier import Classifier
from teachablex.core.dataset import DatasetBuilder
from teachablex.core.store import SampleStore
from teachablex.core.trainer import Trainer, TrainerState, TrainingConfig
from teachablex.errors import NotFound

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from concurrent.futures import Future
    from pathlib import Path

    from teachablex.core.capture import CaptureSource
    from teachablex.core.classifier import Prediction
    from teachablex.core.store import BatchResult, ClassSlot
    from teachablex.core.trainer import HeadFactory, TrainedModel
    from teachablex.ml.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStatistics:
    class_count: int
    total_images: int
    ready_for_training: bool
    trainer_state: TrainerState
    trained: bool
    accuracy: float | None


class TeachingSession:
    """One operator's classes, samples, and model."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        head_factory: HeadFactory,
        *,
        initial_classes: int = 2,
        default_config: TrainingConfig | None = None,
        capture_interval: float = 0.5,
        predict_interval: float = 0.5,
    ) -> None:
        self.embedder = embedder
        self.store = SampleStore(embedder, initial_classes=initial_classes)
        self.builder = DatasetBuilder()
        self.trainer = Trainer(head_factory)
        self.classifier = Classifier(embedder, self.trainer)
        self.default_config = default_config or TrainingConfig()
        self._capture_interval = capture_interval
        self._predict_interval = predict_interval
        self._lock = threading.Lock()
        self._captures: dict[int, CaptureSession] = {}
        self._stream: PredictionStream | None = None

    # -- Classes and samples --------------------------------------------------

    def add_class(self, name: str | None = None) -> int:
        return self.store.add_class(name)

    def remove_class(self, class_id: int) -> None:
        self.store.remove_class(class_id)
        self.close_capture(class_id)

    def rename_class(self, class_id: int, name: str) -> None:
        self.store.rename_class(class_id, name)

    def classes(self) -> list[ClassSlot]:
        return self.store.active_classes()

    def add_sample(self, class_id: int, image: bytes) -> int:
        return self.store.add_sample(class_id, image)

    def add_samples(self, class_id: int, images: Iterable[bytes]) -> BatchResult:
        return self.store.add_samples(class_id, images)

    def remove_sample(self, class_id: int, index: int) -> None:
        self.store.remove_sample(class_id, index)

    def statistics(self) -> SessionStatistics:
        store_stats = self.store.statistics()
        trained = self.trainer.snapshot()
        return SessionStatistics(
            class_count=store_stats.class_count,
            total_images=store_stats.total_images,
            ready_for_training=store_stats.ready_for_training,
            trainer_state=self.trainer.state,
            trained=trained is not None,
            accuracy=trained.result.accuracy if trained is not None else None,
        )

    # -- Training and prediction ----------------------------------------------

    def start_training(
        self,
        config: TrainingConfig | None = None,
        on_epoch: Callable[[int, float], None] | None = None,
    ) -> Future[TrainedModel]:
        """Build the training set from the store and start a run.

        Dataset errors are raised here, before the trainer is touched, so the
        previous model survives them.

        Raises:
            InsufficientClasses, NoValidSamples: From dataset assembly.
            AlreadyTraining: If a run is in flight.
        """
        training_set = self.builder.build(self.store)
        return self.trainer.start(training_set, config or self.default_config, on_epoch)

    def train(
        self,
        config: TrainingConfig | None = None,
        on_epoch: Callable[[int, float], None] | None = None,
    ) -> TrainedModel:
        return self.start_training(config, on_epoch).result()

    def predict(self, image: bytes) -> list[Prediction]:
        return self.classifier.predict(image)

    def reset_model(self) -> None:
        self.trainer.dispose()

    def export_model(self, destination: Path) -> Path:
        return self.trainer.export(destination)

    # -- Capture --------------------------------------------------------------

    def open_capture(self, class_id: int, source: CaptureSource) -> CaptureSession:
        """Open (or return the already open) capture session for a class."""
        self.store.get_class(class_id)
        with self._lock:
            session = self._captures.get(class_id)
            if session is None:
                session = CaptureSession(source, self.store, class_id, interval=self._capture_interval)
                self._captures[class_id] = session
        session.open()
        return session

    def capture_session(self, class_id: int) -> CaptureSession:
        with self._lock:
            session = self._captures.get(class_id)
        if session is None:
            raise NotFound(f"No capture session for class {class_id}")
        return session

    def close_capture(self, class_id: int) -> bool:
        with self._lock:
            session = self._captures.pop(class_id, None)
        if session is None:
            return False
        session.close()
        return True

    def open_prediction_stream(self, source: CaptureSource) -> PredictionStream:
        with self._lock:
            if self._stream is None:
                self._stream = PredictionStream(source, self.classifier, interval=self._predict_interval)
            stream = self._stream
        stream.open()
        stream.start()
        return stream

    @property
    def prediction_stream(self) -> PredictionStream | None:
        with self._lock:
            return self._stream

    def close_prediction_stream(self) -> bool:
        with self._lock:
            stream = self._stream
            self._stream = None
        if stream is None:
            return False
        stream.close()
        return True

    def close(self) -> None:
        """Stop every capture and prediction timer, then release the model."""
        with self._lock:
            class_ids = list(self._captures)
        for class_id in class_ids:
            self.close_capture(class_id)
        self.close_prediction_stream()
        self.trainer.shutdown()
        logger.info("Teaching session closed")
