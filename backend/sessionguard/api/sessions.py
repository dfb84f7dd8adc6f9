"""Session management API for the authenticated subject's own sessions."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from sessionguard.schemas.session import (
    MessageResponse,
    RevokeAllRequest,
    RevokeAllResponse,
    SessionResponse,
    SessionStatsResponse,
    TrackedDeviceResponse,
)
from sessionguard.services.session_manager import SessionManager
from sessionguard.services.types import AccessClaims

from .deps import get_current_claims, get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])
devices_router = APIRouter(prefix="/devices", tags=["devices"])


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    claims: AccessClaims = Depends(get_current_claims),
    manager: SessionManager = Depends(get_session_manager),
) -> list[SessionResponse]:
    """List the caller's live sessions; the one making this call is flagged current."""
    sessions = await manager.list_sessions_for_subject(claims.subject_id)
    return [
        SessionResponse.model_validate(session).model_copy(
            update={"is_current": session.session_id == claims.session_id}
        )
        for session in sessions
    ]


@router.get("/stats", response_model=SessionStatsResponse)
async def session_stats(
    claims: AccessClaims = Depends(get_current_claims),
    manager: SessionManager = Depends(get_session_manager),
) -> SessionStatsResponse:
    stats = await manager.get_session_stats(claims.subject_id)
    return SessionStatsResponse.model_validate(stats)


@router.post("/revoke-all", response_model=RevokeAllResponse)
async def revoke_all_sessions(
    body: RevokeAllRequest | None = None,
    claims: AccessClaims = Depends(get_current_claims),
    manager: SessionManager = Depends(get_session_manager),
) -> RevokeAllResponse:
    """End every session of the caller, including this one."""
    reason = body.reason if body and body.reason else "Revoked by user"
    count = await manager.terminate_all_sessions_for_subject(claims.subject_id, reason)
    logger.info(f"Subject {claims.subject_id} revoked {count} sessions")
    return RevokeAllResponse(sessions_terminated=count)


@router.delete("/{session_id}", response_model=MessageResponse)
async def terminate_session(
    session_id: str,
    claims: AccessClaims = Depends(get_current_claims),
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """End one of the caller's sessions.

    Sessions of other subjects are reported as not found.
    """
    session = await manager.get_session(session_id)
    if session is None or session.subject_id != claims.subject_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    await manager.terminate_session(session_id, "Terminated by user")
    return MessageResponse(message="Session terminated")


@devices_router.get("", response_model=list[TrackedDeviceResponse])
async def list_devices(
    claims: AccessClaims = Depends(get_current_claims),
    manager: SessionManager = Depends(get_session_manager),
) -> list[TrackedDeviceResponse]:
    devices = await manager.device_history(claims.subject_id)
    return [TrackedDeviceResponse.model_validate(device) for device in devices]
