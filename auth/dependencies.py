"""
FastAPI dependencies shared by the protected routes.

``get_current_user_id`` trusts a valid bearer token; ``get_services``
returns the ``LinkingServices`` built at startup.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import InvalidToken, verify_token
from core.service_factory import LinkingServices

_bearer_scheme = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    ``user_id``.
    """
    try:
        return verify_token(credentials.credentials)
    except InvalidToken as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        ) from exc


def get_services(request: Request) -> LinkingServices:
    return request.app.state.services
