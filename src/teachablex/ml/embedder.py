"""Embedding extraction: image bytes -> fixed-length feature vector.

The default implementation runs a pretrained ONNX feature extractor
(DINOv2 or CLIP vision tower) obtained through the model manager.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Protocol

import numpy as np

from teachablex.errors import ExtractionError, NotReady
from teachablex.ml.model_manager import Pooling, get_spec

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from teachablex.ml.model_manager import ModelManager
    from teachablex.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS: float = 1.0


class EmbeddingProvider(Protocol):
    """Protocol for image embedding extractors."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def dimension(self) -> int | None:
        """Output dimensionality, or None until the first embedding is produced."""
        ...

    def ready(self) -> bool:
        """Return True once the extractor is loaded."""
        ...

    def embed(self, image: bytes) -> NDArray[np.float32]:
        """Embed one encoded image.

        Raises:
            NotReady: If called before the extractor is loaded.
            ExtractionError: If the image is malformed.
        """
        ...


class OnnxEmbedder:
    """Runs an ONNX feature extractor and L2-normalizes its pooled output."""

    def __init__(
        self,
        model_manager: ModelManager,
        preprocessor: ImagePreprocessor,
        model_name: str,
        retries: int = 3,
    ) -> None:
        self._model_manager = model_manager
        self._preprocessor = preprocessor
        self._spec = get_spec(model_name)
        self._retries = retries
        self._session: InferenceSession | None = None
        self._input_name: str | None = None
        self._dimension: int | None = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def ready(self) -> bool:
        return self._session is not None

    def load(self) -> None:
        """Resolve the inference session, retrying with linear backoff.

        Raises:
            NotReady: If every attempt failed.
        """
        for attempt in range(1, self._retries + 1):
            try:
                session = self._model_manager.get_session(self._spec.name)
            except Exception as exc:
                if attempt == self._retries:
                    raise NotReady(f"Could not load embedding model {self._spec.name}: {exc}") from exc
                wait = RETRY_BACKOFF_SECONDS * attempt
                logger.warning(
                    "Loading %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    self._spec.name,
                    attempt,
                    self._retries,
                    exc,
                    wait,
                )
                time.sleep(wait)
                continue

            with self._lock:
                self._session = session
                self._input_name = session.get_inputs()[0].name
                self._dimension = None
            logger.info("Embedding model %s ready", self._spec.name)
            return

    def unload(self) -> None:
        with self._lock:
            self._session = None
            self._input_name = None

    def embed(self, image: bytes) -> NDArray[np.float32]:
        session = self._session
        input_name = self._input_name
        if session is None or input_name is None:
            raise NotReady(f"Embedding model {self._spec.name} is not loaded")

        pixels = self._preprocessor.decode_image(image)
        tensor = self._preprocessor.preprocess(pixels, self._spec)
        outputs = session.run([self._spec.output_name], {input_name: tensor})
        features = np.asarray(outputs[0], dtype=np.float32)

        if self._spec.pooling == Pooling.CLS:
            if features.ndim != 3:
                raise ExtractionError(f"Expected (1, T, D) hidden states, got shape {features.shape}")
            features = features[:, 0, :]

        vector = features.reshape(-1)
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector = vector / norm

        if self._dimension is None:
            self._dimension = int(vector.shape[0])
            logger.info("Embedding dimensionality for %s is %d", self._spec.name, self._dimension)
        return vector.astype(np.float32, copy=False)
