"""API route definitions."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Request, Response, UploadFile, status
from fastapi.responses import FileResponse
from PIL import Image, UnidentifiedImageError

from teachablex.api.deps import get_pool, get_session, get_settings_dep, verify_api_key
from teachablex.api.schemas import (
    AutoCaptureResponse,
    CaptureResponse,
    ClassesResponse,
    ClassInfo,
    CreateClassRequest,
    ErrorResponse,
    FailedUpload,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionItem,
    PredictResponse,
    RenameClassRequest,
    StatsResponse,
    TrainingProgressInfo,
    TrainingStatusResponse,
    TrainRequest,
    UploadResponse,
)
from teachablex.config import Settings
from teachablex.core.capture import PushCaptureSource
from teachablex.core.session import TeachingSession
from teachablex.errors import EmbeddingFailed, ExtractionError, NotFound, PushNotSupported
from teachablex.ml.inference import InferencePool
from teachablex.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from collections.abc import Callable

    from teachablex.core.capture import CaptureSource
    from teachablex.core.classifier import Prediction
    from teachablex.core.store import ClassSlot

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SessionDep = Annotated[TeachingSession, Depends(get_session)]
PoolDep = Annotated[InferencePool, Depends(get_pool)]
SettingsDep = Annotated[Settings, Depends(get_settings_dep)]

EXPORT_FILENAME = "teachablex-model.pt"


def _class_info(slot: ClassSlot) -> ClassInfo:
    return ClassInfo(id=slot.id, name=slot.name, sample_count=slot.sample_count)


def _predictions(predictions: list[Prediction]) -> PredictResponse:
    return PredictResponse(
        predictions=[PredictionItem(class_name=p.class_name, confidence=p.confidence) for p in predictions]
    )


def _source_factory(request: Request) -> Callable[[], CaptureSource]:
    factory: Callable[[], CaptureSource] = request.app.state.source_factory
    return factory


def _push_target(source: CaptureSource) -> PushCaptureSource:
    if not isinstance(source, PushCaptureSource):
        raise PushNotSupported("Capture source reads from a local camera and does not accept frames")
    return source


async def _read_frame(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise ExtractionError("File too large")
    return data


def _training_status(session: TeachingSession) -> TrainingStatusResponse:
    trainer = session.trainer
    progress = trainer.progress
    trained = trainer.snapshot()
    error = trainer.last_error
    return TrainingStatusResponse(
        state=trainer.state,
        progress=(
            TrainingProgressInfo(epoch=progress.epoch, epochs=progress.epochs, accuracy=progress.accuracy)
            if progress is not None
            else None
        ),
        class_names=list(trained.class_names) if trained is not None else [],
        accuracy=trained.result.accuracy if trained is not None else None,
        val_accuracy=trained.result.val_accuracy if trained is not None else None,
        error=str(error) if error is not None else None,
        error_category=error.category if error is not None else None,
    )


def _guess_media_type(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format or "", "application/octet-stream")
    except (UnidentifiedImageError, OSError):
        return "application/octet-stream"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request, settings: SettingsDep, session: SessionDep, pool: PoolDep) -> HealthResponse:
    """Return service health status."""
    model_manager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        embedder_ready=session.embedder.ready(),
        embedding_model=settings.embedding_model,
        models_loaded=model_manager.get_loaded_models(),
        trainer_state=session.trainer.state,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/models", response_model=ModelsResponse, summary="List embedding models")
async def list_models(settings: SettingsDep) -> ModelsResponse:
    """Return the embedding model registry with the active model marked."""
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                repo_id=spec.repo_id,
                status="active" if spec.name == settings.embedding_model else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )


@router.get("/stats", response_model=StatsResponse, summary="Session statistics")
async def stats(session: SessionDep) -> StatsResponse:
    s = session.statistics()
    return StatsResponse(
        class_count=s.class_count,
        total_images=s.total_images,
        ready_for_training=s.ready_for_training,
        trainer_state=s.trainer_state,
        trained=s.trained,
        accuracy=s.accuracy,
    )


# ---------------------------------------------------------------------------
# Classes and samples
# ---------------------------------------------------------------------------


@router.get("/classes", response_model=ClassesResponse, summary="List classes")
async def list_classes(session: SessionDep) -> ClassesResponse:
    return ClassesResponse(classes=[_class_info(slot) for slot in session.classes()])


@router.post(
    "/classes",
    response_model=ClassInfo,
    status_code=status.HTTP_201_CREATED,
    summary="Add a class",
)
async def create_class(session: SessionDep, body: CreateClassRequest | None = None) -> ClassInfo:
    class_id = session.add_class(body.name if body is not None else None)
    return _class_info(session.store.get_class(class_id))


@router.patch(
    "/classes/{class_id}",
    response_model=ClassInfo,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Rename a class",
)
async def rename_class(class_id: int, body: RenameClassRequest, session: SessionDep) -> ClassInfo:
    session.rename_class(class_id, body.name)
    return _class_info(session.store.get_class(class_id))


@router.delete(
    "/classes/{class_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Remove a class",
)
async def remove_class(class_id: int, session: SessionDep) -> Response:
    await asyncio.to_thread(session.remove_class, class_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/classes/{class_id}/samples",
    response_model=UploadResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Upload images to a class",
)
async def upload_samples(
    class_id: int,
    files: list[UploadFile],
    session: SessionDep,
    pool: PoolDep,
    settings: SettingsDep,
) -> UploadResponse:
    """Embed and store each uploaded image in order.

    Files that are not images, too large, or fail to embed are reported and
    skipped; the rest of the batch continues.
    """
    session.store.get_class(class_id)
    added: list[int] = []
    failed: list[FailedUpload] = []

    for upload in files:
        filename = upload.filename or "<unnamed>"
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            failed.append(FailedUpload(filename=filename, detail=f"Unsupported content type {content_type!r}"))
            continue
        data = await upload.read()
        if len(data) > settings.max_file_size:
            failed.append(FailedUpload(filename=filename, detail="File too large"))
            continue
        try:
            added.append(await pool.run(session.add_sample, class_id, data))
        except EmbeddingFailed as exc:
            failed.append(FailedUpload(filename=filename, detail=str(exc)))

    return UploadResponse(
        class_id=class_id,
        added=added,
        failed=failed,
        sample_count=session.store.get_class(class_id).sample_count,
    )


@router.get(
    "/classes/{class_id}/samples/{index}",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Fetch a stored image",
)
async def get_sample(class_id: int, index: int, session: SessionDep) -> Response:
    sample = session.store.get_sample(class_id, index)
    return Response(content=sample.raw_image, media_type=_guess_media_type(sample.raw_image))


@router.delete(
    "/classes/{class_id}/samples/{index}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Remove a stored image",
)
async def remove_sample(class_id: int, index: int, session: SessionDep) -> Response:
    session.remove_sample(class_id, index)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


@router.post(
    "/classes/{class_id}/capture",
    response_model=CaptureResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Capture one frame into a class",
)
async def capture(class_id: int, request: Request, session: SessionDep, pool: PoolDep) -> CaptureResponse:
    capture_session = await asyncio.to_thread(session.open_capture, class_id, _source_factory(request)())
    index = await pool.run(capture_session.capture_once)
    return CaptureResponse(class_id=class_id, index=index, captured=capture_session.captured)


@router.put(
    "/classes/{class_id}/capture/frame",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Send the current camera frame for a class",
)
async def push_capture_frame(
    class_id: int, file: UploadFile, request: Request, session: SessionDep, settings: SettingsDep
) -> Response:
    """Replace the frame that the next capture (single or automatic) will read.

    Only valid when frames come from the client (``capture_source=push``).
    """
    frame = await _read_frame(file, settings)
    source = _push_target(_source_factory(request)())
    capture_session = await asyncio.to_thread(session.open_capture, class_id, source)
    _push_target(capture_session.source).push(frame)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/classes/{class_id}/capture",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Close the capture session for a class",
)
async def close_capture(class_id: int, session: SessionDep) -> Response:
    await asyncio.to_thread(session.close_capture, class_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/classes/{class_id}/auto-capture",
    response_model=AutoCaptureResponse,
    summary="Start periodic capture into a class",
)
async def start_auto_capture(class_id: int, request: Request, session: SessionDep) -> AutoCaptureResponse:
    capture_session = await asyncio.to_thread(session.open_capture, class_id, _source_factory(request)())
    capture_session.start_auto()
    return AutoCaptureResponse(class_id=class_id, running=True, captured=capture_session.captured)


@router.delete(
    "/classes/{class_id}/auto-capture",
    response_model=AutoCaptureResponse,
    summary="Stop periodic capture",
)
async def stop_auto_capture(class_id: int, session: SessionDep) -> AutoCaptureResponse:
    try:
        capture_session = session.capture_session(class_id)
    except NotFound:
        return AutoCaptureResponse(class_id=class_id, running=False, captured=0)
    await asyncio.to_thread(capture_session.stop_auto)
    return AutoCaptureResponse(class_id=class_id, running=False, captured=capture_session.captured)


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


@router.post(
    "/train",
    response_model=TrainingStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
    summary="Start a training run",
)
async def train(session: SessionDep, body: TrainRequest | None = None) -> TrainingStatusResponse:
    """Build the training set from the current classes and train in the background."""
    config = session.default_config
    if body is not None:
        config = config.with_overrides(**body.model_dump())
    session.start_training(config)
    return _training_status(session)


@router.get("/train", response_model=TrainingStatusResponse, summary="Training status")
async def training_status(session: SessionDep) -> TrainingStatusResponse:
    return _training_status(session)


@router.delete("/train", status_code=status.HTTP_204_NO_CONTENT, summary="Discard the trained model")
async def reset_model(session: SessionDep) -> Response:
    session.reset_model()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/export",
    response_class=FileResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Download the trained model",
)
async def export_model(session: SessionDep, settings: SettingsDep, pool: PoolDep) -> FileResponse:
    destination = Path(settings.models_dir) / "exports" / EXPORT_FILENAME
    path = await pool.run(session.export_model, destination)
    return FileResponse(path, media_type="application/octet-stream", filename=EXPORT_FILENAME)


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------


@router.post(
    "/predict",
    response_model=PredictResponse,
    responses={
        422: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def predict(file: UploadFile, session: SessionDep, pool: PoolDep) -> PredictResponse:
    """Return every trained class ranked by confidence."""
    data = await file.read()
    return _predictions(await pool.run(session.predict, data))


@router.post("/predict/live", response_model=PredictResponse, summary="Start live camera prediction")
async def start_live_prediction(request: Request, session: SessionDep) -> PredictResponse:
    stream = session.prediction_stream
    if stream is None:
        stream = await asyncio.to_thread(session.open_prediction_stream, _source_factory(request)())
    return _predictions(stream.latest or [])


@router.put(
    "/predict/live/frame",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Send the current camera frame for live prediction",
)
async def push_live_frame(file: UploadFile, request: Request, session: SessionDep, settings: SettingsDep) -> Response:
    frame = await _read_frame(file, settings)
    stream = session.prediction_stream
    if stream is None:
        stream = await asyncio.to_thread(session.open_prediction_stream, _push_target(_source_factory(request)()))
    _push_target(stream.source).push(frame)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/predict/live", response_model=PredictResponse, summary="Latest live prediction")
async def live_prediction(session: SessionDep) -> PredictResponse:
    stream = session.prediction_stream
    if stream is None:
        raise NotFound("Live prediction is not running")
    return _predictions(stream.latest or [])


@router.delete("/predict/live", status_code=status.HTTP_204_NO_CONTENT, summary="Stop live camera prediction")
async def stop_live_prediction(session: SessionDep) -> Response:
    await asyncio.to_thread(session.close_prediction_stream)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
