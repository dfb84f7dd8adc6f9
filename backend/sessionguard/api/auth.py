"""Session authentication API: token exchange, refresh and logout.

These routes sit outside /api/* and authenticate themselves.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from sessionguard.middleware.session_auth import UNAUTHORIZED_DETAIL
from sessionguard.schemas.session import (
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    SessionExchangeRequest,
    TokenPairResponse,
)
from sessionguard.services.errors import (
    InvalidInputError,
    InvalidTokenError,
    SessionNotFoundError,
    TokenBlacklistedError,
    TokenExpiredError,
    TokenGenerationFailedError,
)
from sessionguard.services.session_manager import SessionManager
from sessionguard.services.types import AccessClaims, TokenPair

from .deps import client_ip, get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

LOGOUT_REASON = "User logout"


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=UNAUTHORIZED_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _token_response(pair: TokenPair, manager: SessionManager) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_token_expires_at=pair.access_token_expires_at,
        refresh_token_expires_at=pair.refresh_token_expires_at,
        expires_in=int(manager.access_token_ttl.total_seconds()),
    )


@router.post("/session", response_model=TokenPairResponse)
async def create_session(
    body: SessionExchangeRequest,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> TokenPairResponse:
    """Exchange an identity-provider token for a session token pair."""
    if manager.identity_provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider is not configured",
        )
    try:
        pair = await manager.exchange_identity_token(
            body.id_token,
            body.device_info.to_device_info(),
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
            login_method=body.login_method,
        )
    except (InvalidTokenError, TokenExpiredError, TokenBlacklistedError) as e:
        raise _unauthorized() from e
    except InvalidInputError as e:
        raise HTTPException(
            status_code=422,
            detail=e.message,
        ) from e
    except TokenGenerationFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to issue tokens",
        ) from e
    return _token_response(pair, manager)


@router.post("/refresh", response_model=TokenPairResponse)
async def refresh_tokens(
    body: RefreshRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> TokenPairResponse:
    """Rotate a refresh token into a new pair (the old one is blacklisted)."""
    try:
        pair = await manager.refresh_token_pair(body.refresh_token)
    except (
        InvalidTokenError,
        TokenExpiredError,
        TokenBlacklistedError,
        SessionNotFoundError,
    ) as e:
        raise _unauthorized() from e
    except TokenGenerationFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to refresh tokens",
        ) from e
    return _token_response(pair, manager)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    body: LogoutRequest | None = None,
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """Blacklist the presented token pair and end its session."""
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else ""
    result = await manager.validate_access_token(token)
    if not result.is_valid or not isinstance(result.payload, AccessClaims):
        raise _unauthorized()

    claims = result.payload
    await manager.blacklist_token_pair(
        token,
        body.refresh_token if body else None,
        reason=LOGOUT_REASON,
    )
    await manager.terminate_session(claims.session_id, LOGOUT_REASON)
    logger.info(f"Subject logged out: {claims.subject_id}")
    return MessageResponse(message="Logged out successfully")
