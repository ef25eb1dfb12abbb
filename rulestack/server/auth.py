"""Bearer-token dependency for write endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status


def require_token(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the caller's token.

    Raises ``401 Unauthorized`` when the header is missing, not a bearer
    token, or unknown to the package store.
    """
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            if request.app.state.repository.validate_token(token.strip()):
                return token.strip()

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
