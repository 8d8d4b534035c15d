"""Opus Convert Service - Bearer token check for protected routes."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Header, HTTPException

from app import config


def require_bearer_token(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """FastAPI dependency that enforces the API bearer token.

    Raises:
        HTTPException: 401 if no token was sent, 403 if it does not match.
    """
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            token = value.strip()

    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    expected = config.API_TOKEN
    if not expected or not secrets.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Forbidden")
