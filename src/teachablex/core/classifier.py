"""Prediction path: image -> ranked (class name, confidence) list."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from teachablex.errors import EmbeddingFailed, ExtractionError, ModelDisposed

if TYPE_CHECKING:
    from teachablex.core.trainer import Trainer
    from teachablex.ml.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)

UNTRAINED_LABEL = "untrained"


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    class_name: str
    confidence: float


UNTRAINED = (Prediction(class_name=UNTRAINED_LABEL, confidence=0.0),)


class Classifier:
    """Classifies images with the trainer's latest model.

    Class names come from the run that produced the model, not from the
    store's current contents.
    """

    def __init__(self, embedder: EmbeddingProvider, trainer: Trainer) -> None:
        self._embedder = embedder
        self._trainer = trainer

    def predict(self, image: bytes) -> list[Prediction]:
        """Return predictions sorted by confidence (descending).

        Returns the single ``untrained`` sentinel when no model exists,
        including when the model is disposed while this call is running.

        Raises:
            NotReady: If the embedding model is not loaded.
            EmbeddingFailed: If the image cannot be embedded.
        """
        trained = self._trainer.snapshot()
        if trained is None:
            return list(UNTRAINED)

        try:
            embedding = self._embedder.embed(image)
        except ExtractionError as exc:
            raise EmbeddingFailed(str(exc)) from exc

        try:
            probabilities = trained.model.predict(embedding)
        except ModelDisposed:
            logger.debug("Model disposed during prediction; reporting untrained")
            return list(UNTRAINED)
        except ValueError as exc:
            raise EmbeddingFailed(f"Embedding does not fit the trained model: {exc}") from exc

        return rank(trained.class_names, probabilities)


def rank(class_names: tuple[str, ...], probabilities: np.ndarray) -> list[Prediction]:
    """Pair names with probabilities and sort by confidence, highest first."""
    probs = np.asarray(probabilities, dtype=np.float64).reshape(-1)
    if probs.shape[0] != len(class_names):
        raise ValueError(f"Got {probs.shape[0]} probabilities for {len(class_names)} classes")
    order = np.argsort(-probs, kind="stable")
    return [Prediction(class_name=class_names[i], confidence=float(probs[i])) for i in order]
