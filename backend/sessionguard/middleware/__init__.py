"""Middleware module for SessionGuard."""

from sessionguard.middleware.session_auth import SessionAuthMiddleware

__all__ = [
    "SessionAuthMiddleware",
]
