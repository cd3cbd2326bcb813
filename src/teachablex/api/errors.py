"""Map TeachableX errors onto HTTP responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import status
from fastapi.responses import JSONResponse

from teachablex.errors import (
    AlreadyTraining,
    CaptureUnavailable,
    EmbeddingFailed,
    ExtractionError,
    IndexOutOfRange,
    InsufficientClasses,
    InvariantViolation,
    NoValidSamples,
    NotFound,
    NotReady,
    NotTrained,
    PushNotSupported,
    TeachableXError,
    TrainingError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

UNPROCESSABLE = 422

STATUS_BY_ERROR: tuple[tuple[type[TeachableXError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (IndexOutOfRange, status.HTTP_404_NOT_FOUND),
    (NotTrained, status.HTTP_404_NOT_FOUND),
    (InvariantViolation, status.HTTP_409_CONFLICT),
    (AlreadyTraining, status.HTTP_409_CONFLICT),
    (InsufficientClasses, UNPROCESSABLE),
    (NoValidSamples, UNPROCESSABLE),
    (EmbeddingFailed, UNPROCESSABLE),
    (ExtractionError, UNPROCESSABLE),
    (NotReady, status.HTTP_503_SERVICE_UNAVAILABLE),
    (CaptureUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PushNotSupported, status.HTTP_409_CONFLICT),
    (TrainingError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: Exception) -> int:
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def teachablex_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = status_for(exc)
    if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def queue_timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference queue is full, try again later"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TeachableXError, teachablex_error_handler)
    app.add_exception_handler(TimeoutError, queue_timeout_handler)
