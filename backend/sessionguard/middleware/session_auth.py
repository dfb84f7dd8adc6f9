"""Session authentication middleware for the /api/* endpoints.

Every request to /api/* must carry a valid access token whose session is
still live. Garbage, expired and blacklisted tokens all get the same 401
response, so a caller cannot tell a revoked token from an unknown one.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from sessionguard.services.session_manager import SessionManager
from sessionguard.services.types import AccessClaims, SessionAction, SessionActivity

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api"
UNAUTHORIZED_DETAIL = "Invalid or expired token"


def unauthorized_response() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": UNAUTHORIZED_DETAIL},
        headers={"WWW-Authenticate": "Bearer"},
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate /api/* requests and record them as session activity.

    On success the verified :class:`AccessClaims` are available as
    ``request.state.auth``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # CORS preflight never carries credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        if path != PROTECTED_PREFIX and not path.startswith(PROTECTED_PREFIX + "/"):
            return await call_next(request)

        token = self._extract_token(request)
        if not token:
            logger.debug(f"API request without token: {request.method} {path}")
            return unauthorized_response()

        manager: SessionManager = request.app.state.session_manager
        result = await manager.validate_access_token(token)
        if not result.is_valid or not isinstance(result.payload, AccessClaims):
            logger.debug(f"Rejected token for {request.method} {path}: {result.status.value}")
            return unauthorized_response()

        claims = result.payload
        # A terminated or expired session invalidates its access tokens immediately
        touched = await manager.touch_session(
            claims.session_id,
            SessionActivity(action=SessionAction.API_CALL, resource=f"{request.method} {path}"),
        )
        if not touched:
            logger.debug(f"Token for ended session used: {request.method} {path}")
            return unauthorized_response()

        request.state.auth = claims
        return await call_next(request)

    def _extract_token(self, request: Request) -> str | None:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header[7:]
        return None
