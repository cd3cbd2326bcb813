"""Sample store: named class slots, each holding (image, embedding) pairs.

Slots keep creation order, which is also display order and the order the
dataset builder assigns labels in. Ids come from a monotonically increasing
counter and are never reused.

Embedding runs outside the store lock but inside a per-slot lock, so uploads
to one class are appended strictly in call order while different classes can
ingest in parallel.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from teachablex.errors import (
    EmbeddingFailed,
    ExtractionError,
    IndexOutOfRange,
    InvariantViolation,
    NotFound,
    NotReady,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from numpy.typing import NDArray

    from teachablex.ml.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)

MIN_CLASSES = 2


@dataclass(frozen=True)
class Sample:
    """An encoded image and the embedding extracted from it."""

    raw_image: bytes
    embedding: NDArray[np.float32]


@dataclass
class ClassSlot:
    """A named bucket of samples."""

    id: int
    name: str
    samples: list[Sample] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    def release(self) -> None:
        self.samples.clear()


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a multi-image upload."""

    added: tuple[int, ...] = ()
    failed: tuple[tuple[int, str], ...] = ()

    @property
    def added_count(self) -> int:
        return len(self.added)


@dataclass(frozen=True)
class StoreStatistics:
    class_count: int
    total_images: int
    ready_for_training: bool


class SampleStore:
    """Owns every class slot and its samples."""

    def __init__(self, embedder: EmbeddingProvider, initial_classes: int = MIN_CLASSES) -> None:
        if initial_classes < MIN_CLASSES:
            raise ValueError(f"initial_classes must be >= {MIN_CLASSES}")
        self._embedder = embedder
        self._lock = threading.RLock()
        self._slots: dict[int, ClassSlot] = {}
        self._next_id = 0
        for _ in range(initial_classes):
            self.add_class()

    # -- Classes --------------------------------------------------------------

    def add_class(self, initial_name: str | None = None) -> int:
        """Create an empty class and return its id."""
        with self._lock:
            class_id = self._next_id
            self._next_id += 1
            name = initial_name if initial_name is not None else f"Class {class_id + 1}"
            self._slots[class_id] = ClassSlot(id=class_id, name=name)
        logger.info("Added class %d (%r)", class_id, name)
        return class_id

    def remove_class(self, class_id: int) -> None:
        """Remove a class and release its samples.

        Raises:
            NotFound: If the class is not active.
            InvariantViolation: If removal would leave fewer than two classes.
        """
        with self._lock:
            self._require(class_id)
            if len(self._slots) <= MIN_CLASSES:
                raise InvariantViolation(f"At least {MIN_CLASSES} classes are required")
            slot = self._slots.pop(class_id)
            released = slot.sample_count
            slot.release()
        logger.info("Removed class %d (%d samples released)", class_id, released)

    def rename_class(self, class_id: int, name: str) -> None:
        with self._lock:
            self._require(class_id).name = name

    def get_class(self, class_id: int) -> ClassSlot:
        with self._lock:
            return self._require(class_id)

    def active_classes(self) -> list[ClassSlot]:
        """Active slots in creation order."""
        with self._lock:
            return list(self._slots.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, class_id: object) -> bool:
        with self._lock:
            return class_id in self._slots

    # -- Samples --------------------------------------------------------------

    def add_sample(self, class_id: int, raw_image: bytes) -> int:
        """Embed ``raw_image`` and append it to the class; return its index.

        The image and its embedding are added together or not at all.

        Raises:
            NotReady: If the embedding provider is not loaded.
            NotFound: If the class is not active (or was removed meanwhile).
            EmbeddingFailed: If extraction fails or yields a malformed vector.
        """
        if not self._embedder.ready():
            raise NotReady("Embedding model is not loaded")
        slot = self.get_class(class_id)

        with slot.lock:
            embedding = self._embed(raw_image)
            with self._lock:
                if self._slots.get(class_id) is not slot:
                    raise NotFound(f"Class {class_id} was removed during embedding")
                slot.samples.append(Sample(raw_image=raw_image, embedding=embedding))
                index = slot.sample_count - 1
        logger.debug("Added sample %d to class %d", index, class_id)
        return index

    def add_samples(self, class_id: int, images: Iterable[bytes]) -> BatchResult:
        """Add several images; per-image embedding failures are logged and skipped.

        Raises:
            NotReady, NotFound: These abort the batch.
        """
        added: list[int] = []
        failed: list[tuple[int, str]] = []
        for position, raw_image in enumerate(images):
            try:
                added.append(self.add_sample(class_id, raw_image))
            except EmbeddingFailed as exc:
                logger.warning("Skipping image %d for class %d: %s", position, class_id, exc)
                failed.append((position, str(exc)))
        logger.info("Batch upload to class %d: %d added, %d skipped", class_id, len(added), len(failed))
        return BatchResult(added=tuple(added), failed=tuple(failed))

    def remove_sample(self, class_id: int, index: int) -> None:
        """Remove the sample at ``index``; later samples shift down by one.

        Raises:
            NotFound: If the class is not active.
            IndexOutOfRange: If ``index`` is not a valid position.
        """
        slot = self.get_class(class_id)
        with slot.lock, self._lock:
            if self._slots.get(class_id) is not slot:
                raise NotFound(f"Class {class_id} not found")
            if not 0 <= index < slot.sample_count:
                raise IndexOutOfRange(f"Class {class_id} has no sample at index {index}")
            del slot.samples[index]
        logger.debug("Removed sample %d from class %d", index, class_id)

    def get_sample(self, class_id: int, index: int) -> Sample:
        slot = self.get_class(class_id)
        with self._lock:
            if not 0 <= index < slot.sample_count:
                raise IndexOutOfRange(f"Class {class_id} has no sample at index {index}")
            return slot.samples[index]

    # -- Summary --------------------------------------------------------------

    def ready_for_training(self) -> bool:
        """True iff at least two classes have a sample."""
        with self._lock:
            return sum(1 for slot in self._slots.values() if slot.samples) >= MIN_CLASSES

    def statistics(self) -> StoreStatistics:
        with self._lock:
            return StoreStatistics(
                class_count=len(self._slots),
                total_images=sum(slot.sample_count for slot in self._slots.values()),
                ready_for_training=self.ready_for_training(),
            )

    # -- Internal -------------------------------------------------------------

    def _require(self, class_id: int) -> ClassSlot:
        slot = self._slots.get(class_id)
        if slot is None:
            raise NotFound(f"Class {class_id} not found")
        return slot

    def _embed(self, raw_image: bytes) -> NDArray[np.float32]:
        try:
            vector = self._embedder.embed(raw_image)
        except NotReady:
            raise
        except ExtractionError as exc:
            raise EmbeddingFailed(str(exc)) from exc
        except Exception as exc:
            raise EmbeddingFailed(f"Embedding failed: {exc}") from exc

        embedding = np.asarray(vector, dtype=np.float32)
        expected = self._embedder.dimension
        if embedding.ndim != 1 or embedding.size == 0:
            raise EmbeddingFailed(f"Embedding has invalid shape {embedding.shape}")
        if expected is not None and embedding.shape[0] != expected:
            raise EmbeddingFailed(f"Embedding length {embedding.shape[0]} != provider dimension {expected}")
        if not np.all(np.isfinite(embedding)):
            raise EmbeddingFailed("Embedding contains non-finite values")
        return embedding
