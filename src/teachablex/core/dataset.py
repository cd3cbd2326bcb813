"""Flatten the sample store into a labeled training set."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from teachablex.core.store import MIN_CLASSES
from teachablex.errors import InsufficientClasses, NoValidSamples

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from teachablex.core.store import SampleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingSet:
    """Features, integer labels, and the class name for each label.

    Built fresh for every run; labels index into ``class_names``.
    """

    features: NDArray[np.float32]
    labels: NDArray[np.int64]
    class_names: tuple[str, ...]
    skipped: int = 0

    @property
    def num_samples(self) -> int:
        return int(self.features.shape[0])

    @property
    def num_classes(self) -> int:
        return len(self.class_names)

    @property
    def dimension(self) -> int:
        return int(self.features.shape[1])

    def one_hot(self) -> NDArray[np.float32]:
        encoded = np.zeros((self.num_samples, self.num_classes), dtype=np.float32)
        encoded[np.arange(self.num_samples), self.labels] = 1.0
        return encoded


class DatasetBuilder:
    """Builds a ``TrainingSet`` from the store's current contents."""

    def build(self, store: SampleStore) -> TrainingSet:
        """Assemble features and labels.

        Classes without samples are left out; labels follow the order of the
        remaining classes. The first embedding seen fixes the expected length
        and embeddings of any other shape are skipped with a warning. A class
        whose samples are all skipped is left out as well, so every label has
        at least one row.

        Raises:
            InsufficientClasses: If fewer than two classes have usable samples.
            NoValidSamples: If every sample was skipped.
        """
        selected = [(slot.name, list(slot.samples)) for slot in store.active_classes() if slot.samples]
        if len(selected) < MIN_CLASSES:
            raise InsufficientClasses(
                f"Need at least {MIN_CLASSES} classes with samples, got {len(selected)}"
            )

        expected: int | None = None
        skipped = 0
        kept: list[tuple[str, list[NDArray[np.float32]]]] = []

        for name, samples in selected:
            rows: list[NDArray[np.float32]] = []
            for index, sample in enumerate(samples):
                embedding = sample.embedding
                if embedding.ndim != 1:
                    logger.warning(
                        "Skipping sample %d of %r: embedding is not a vector (shape %s)",
                        index,
                        name,
                        embedding.shape,
                    )
                    skipped += 1
                    continue
                if expected is None:
                    expected = int(embedding.shape[0])
                elif embedding.shape[0] != expected:
                    logger.warning(
                        "Skipping sample %d of %r: embedding length %d, expected %d",
                        index,
                        name,
                        embedding.shape[0],
                        expected,
                    )
                    skipped += 1
                    continue
                rows.append(embedding)
            if rows:
                kept.append((name, rows))
            else:
                logger.warning("Leaving out %r: none of its %d samples is usable", name, len(samples))

        if not kept:
            raise NoValidSamples("No sample has a usable embedding")
        if len(kept) < MIN_CLASSES:
            raise InsufficientClasses(
                f"Need at least {MIN_CLASSES} classes with usable samples, got {len(kept)}"
            )

        features = [row for _, rows in kept for row in rows]
        labels = [label for label, (_, rows) in enumerate(kept) for _ in rows]
        training_set = TrainingSet(
            features=np.stack(features).astype(np.float32, copy=False),
            labels=np.asarray(labels, dtype=np.int64),
            class_names=tuple(name for name, _ in kept),
            skipped=skipped,
        )
        logger.info(
            "Training data: %d samples, %d classes, dim=%d (%d skipped)",
            training_set.num_samples,
            training_set.num_classes,
            training_set.dimension,
            skipped,
        )
        return training_set
