"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from sessionguard.middleware.session_auth import UNAUTHORIZED_DETAIL
from sessionguard.services.session_manager import SessionManager
from sessionguard.services.types import AccessClaims


def get_session_manager(request: Request) -> SessionManager:
    """The manager built in the application lifespan."""
    return request.app.state.session_manager


def get_current_claims(request: Request) -> AccessClaims:
    """Claims verified by SessionAuthMiddleware for this request."""
    claims = getattr(request.state, "auth", None)
    if not isinstance(claims, AccessClaims):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UNAUTHORIZED_DETAIL,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"
