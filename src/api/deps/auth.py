"""Bearer token check for protected routes."""

from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, status

from ..settings import APISettings, get_settings


def get_bearer_token(
    authorization: str | None = Header(default=None),
    settings: APISettings = Depends(get_settings),
) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not any(secrets.compare_digest(token, known) for known in settings.api_tokens):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token
