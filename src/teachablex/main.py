"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from teachablex.config import Settings
    from teachablex.core.capture import CaptureSource

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from teachablex.api.errors import register_error_handlers
from teachablex.api.routes import router
from teachablex.config import get_settings
from teachablex.core.capture import OpenCVCaptureSource, PushCaptureSource
from teachablex.core.session import TeachingSession
from teachablex.core.trainer import TrainingConfig
from teachablex.errors import NotReady
from teachablex.ml.embedder import OnnxEmbedder
from teachablex.ml.head import TorchHeadFactory, resolve_device
from teachablex.ml.inference import InferencePool
from teachablex.ml.model_manager import OnnxModelManager
from teachablex.ml.preprocessing import PillowPreprocessor

logger = logging.getLogger(__name__)


def build_session(settings: Settings, embedder: OnnxEmbedder) -> TeachingSession:
    """Wire a teaching session from settings."""
    return TeachingSession(
        embedder,
        TorchHeadFactory(device=resolve_device(settings.device)),
        initial_classes=settings.initial_classes,
        default_config=TrainingConfig.from_settings(settings),
        capture_interval=settings.auto_capture_interval,
        predict_interval=settings.predict_interval,
    )


def source_factory(settings: Settings) -> CaptureSource:
    """Return a new capture source of the configured kind."""
    if settings.capture_source == "push":
        return PushCaptureSource()
    return OpenCVCaptureSource(
        device_index=settings.camera_index,
        width=settings.camera_width,
        height=settings.camera_height,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting TeachableX (device=%s, max_concurrent=%s, embedding=%s)",
        settings.device,
        settings.max_concurrent,
        settings.embedding_model,
    )

    model_manager = OnnxModelManager(settings)
    embedder = OnnxEmbedder(
        model_manager,
        PillowPreprocessor(settings.max_image_pixels),
        settings.embedding_model,
        retries=settings.model_load_retries,
    )
    try:
        await asyncio.to_thread(embedder.load)
    except NotReady:
        logger.exception("Embedding model unavailable; class operations will return 503")

    app.state.model_manager = model_manager
    app.state.inference_pool = InferencePool(settings)
    app.state.session = build_session(settings, embedder)
    app.state.source_factory = lambda: source_factory(settings)

    logger.info("TeachableX ready")
    yield

    logger.info("Shutting down TeachableX")
    app.state.session.close()
    app.state.inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("TeachableX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="TeachableX",
        description="Interactive image classifier: collect examples per class, train a head on embeddings, predict",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("teachablex.main:app", host=settings.host, port=settings.port)
