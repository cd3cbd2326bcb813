"""Model manager: download, load, and cache ONNX embedding models.

Handles downloading feature extractors from HuggingFace, creating and caching
ONNX InferenceSessions that live until shutdown.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from teachablex.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class Pooling(StrEnum):
    NONE = "none"
    CLS = "cls"


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)
CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD = (0.26862954, 0.26130258, 0.27577711)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX feature extractor."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    input_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    output_name: str
    pooling: Pooling
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "dinov2_small": ModelSpec(
        name="dinov2_small",
        repo_id="Xenova/dinov2-small",
        filename="model.onnx",
        subfolder="onnx",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        output_name="last_hidden_state",
        pooling=Pooling.CLS,
        license="Apache-2.0",
    ),
    "dinov2_base": ModelSpec(
        name="dinov2_base",
        repo_id="Xenova/dinov2-base",
        filename="model.onnx",
        subfolder="onnx",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        output_name="last_hidden_state",
        pooling=Pooling.CLS,
        license="Apache-2.0",
    ),
    "clip_vit_b32": ModelSpec(
        name="clip_vit_b32",
        repo_id="Xenova/clip-vit-base-patch32",
        filename="vision_model.onnx",
        subfolder="onnx",
        input_size=224,
        mean=CLIP_MEAN,
        std=CLIP_STD,
        output_name="image_embeds",
        pooling=Pooling.NONE,
        license="MIT",
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry by name."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads, and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have created it while we loaded.
            existing = self._sessions.setdefault(model_name, session)
            if existing is session:
                logger.info("Loaded session for %s", model_name)
            return existing

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
