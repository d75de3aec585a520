"""Middleware: API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from renamex.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _matches(candidate: str | None, expected: str) -> bool:
    return candidate is not None and secrets.compare_digest(candidate.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    x_api_key: Annotated[str | None, Header()] = None,
) -> None:
    """Check the request's key against the configured API key.

    If no API key is configured (RENAMEX_API_KEY not set), all requests pass.
    Otherwise the key must come as 'Authorization: Bearer <key>' or as an
    'X-API-Key' header.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    bearer = credentials.credentials if credentials is not None else None
    if not (_matches(bearer, settings.api_key) or _matches(x_api_key, settings.api_key)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
