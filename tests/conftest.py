"""Shared fakes for TeachableX tests."""

from __future__ import annotations

import io
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from teachablex.core.store import SampleStore
from teachablex.core.trainer import EpochMetrics, FitResult
from teachablex.errors import ExtractionError, ModelDisposed, NotReady

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from numpy.typing import NDArray

    from teachablex.core.trainer import TrainingConfig


# ---------------------------------------------------------------------------
# Embedding provider
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """Maps an image's first byte onto a noisy one-hot vector.

    ``b"bad..."`` payloads raise ExtractionError. ``dim`` may be changed to
    simulate the extractor being reloaded with a different configuration.
    ``hook`` runs on the calling thread before each embedding.
    """

    def __init__(self, dim: int = 4, ready: bool = True) -> None:
        self.dim = dim
        self.is_ready = ready
        self.calls: list[bytes] = []
        self.hook: Callable[[], None] | None = None

    @property
    def model_name(self) -> str:
        return "fake"

    @property
    def dimension(self) -> int | None:
        return self.dim

    def ready(self) -> bool:
        return self.is_ready

    def embed(self, image: bytes) -> NDArray[np.float32]:
        if not self.is_ready:
            raise NotReady("fake embedder not loaded")
        if image.startswith(b"bad"):
            raise ExtractionError("cannot decode")
        if self.hook is not None:
            self.hook()
        self.calls.append(image)
        rng = np.random.default_rng(sum(image))
        vector = rng.normal(0.0, 0.05, self.dim).astype(np.float32)
        vector[image[0] % self.dim] += 1.0
        return vector


def frame(cluster: int, variant: int = 0) -> bytes:
    """An encoded 'image' that FakeEmbedder maps to ``cluster``."""
    return bytes([cluster, variant, 7])


def png_bytes(color: tuple[int, int, int] = (200, 30, 30), size: tuple[int, int] = (32, 24)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Trainable head
# ---------------------------------------------------------------------------


class FakeHeadModel:
    def __init__(self, input_dim: int, num_classes: int, gate: threading.Event | None = None) -> None:
        self.input_dim = input_dim
        self.num_classes = num_classes
        self.gate = gate
        self.fitting = threading.Event()
        self.disposed = False
        self.fit_calls = 0
        self.fail_with: Exception | None = None

    def fit(
        self,
        features: NDArray[np.float32],
        labels: NDArray[np.int64],
        config: TrainingConfig,
        on_epoch: Callable[[int, float], None],
    ) -> FitResult:
        self.fit_calls += 1
        self.fitting.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_with is not None:
            raise self.fail_with
        history = []
        for epoch in range(1, config.epochs + 1):
            accuracy = epoch / config.epochs
            history.append(EpochMetrics(epoch=epoch, loss=1.0 / epoch, accuracy=accuracy))
            on_epoch(epoch, accuracy)
        return FitResult(
            epochs=config.epochs,
            train_samples=int(features.shape[0]),
            validation_samples=0,
            history=tuple(history),
        )

    def predict(self, vector: NDArray[np.float32]) -> NDArray[np.float32]:
        if self.disposed:
            raise ModelDisposed("disposed")
        if vector.shape[0] != self.input_dim:
            raise ValueError("dim mismatch")
        logits = np.arange(self.num_classes, dtype=np.float32)
        exp = np.exp(logits - logits.max())
        return (exp / exp.sum()).astype(np.float32)

    def save(self, destination: Path, class_names: tuple[str, ...]) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(",".join(class_names))
        return destination

    def dispose(self) -> None:
        self.disposed = True


class FakeHeadFactory:
    def __init__(self) -> None:
        self.built: list[FakeHeadModel] = []
        self.gate: threading.Event | None = None
        self.fail_build: Exception | None = None
        self.fail_fit: Exception | None = None

    def build(self, input_dim: int, num_classes: int, config: TrainingConfig) -> FakeHeadModel:
        if self.fail_build is not None:
            raise self.fail_build
        model = FakeHeadModel(input_dim, num_classes, gate=self.gate)
        model.fail_with = self.fail_fit
        self.built.append(model)
        return model


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture()
def store(embedder: FakeEmbedder) -> SampleStore:
    return SampleStore(embedder)


@pytest.fixture()
def head_factory() -> FakeHeadFactory:
    return FakeHeadFactory()
