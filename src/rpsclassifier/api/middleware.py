"""Middleware: API key authentication for the JSON API.

The HTML page and preview routes are not covered; browsers cannot attach a
Bearer token to form posts or image tags.
"""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from rpsclassifier.api.dependencies import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _key_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against RPSCLASSIFIER_API_KEY, when one is set."""
    expected = get_settings(request).api_key
    if expected is None:
        return

    if credentials is None or not _key_matches(credentials.credentials, expected):
        logger.warning("Rejected %s %s: invalid or missing API key", request.method, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
