"""Request dependencies: app-state accessors and API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from teachablex.config import Settings
    from teachablex.core.session import TeachingSession
    from teachablex.ml.inference import InferencePool

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings_dep(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_session(request: Request) -> TeachingSession:
    session: TeachingSession = request.app.state.session
    return session


def get_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against TEACHABLEX_API_KEY.

    With no key configured every request passes; otherwise requests must send
    'Authorization: Bearer <key>'.
    """
    api_key = get_settings_dep(request).api_key
    if api_key is None:
        return

    presented = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(presented.encode(), api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
