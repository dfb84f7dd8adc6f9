"""Health check endpoint.

Accessible without authentication.
"""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from sessionguard.core.database import check_db_connection

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    storage: str
    database: str = "not_used"
    sweep_running: bool
    active_sessions: int


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """Report service health. Returns 503 if the configured database is unreachable."""
    settings = request.app.state.settings
    manager = request.app.state.session_manager

    database = "not_used"
    session_maker = getattr(request.app.state, "db_session_maker", None)
    if session_maker is not None:
        database = "connected" if await check_db_connection(session_maker) else "disconnected"
        if database == "disconnected":
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="unhealthy",
                version=settings.app_version,
                storage=settings.storage_backend,
                database=database,
                sweep_running=manager.is_running,
                active_sessions=0,
            )

    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        storage=settings.storage_backend,
        database=database,
        sweep_running=manager.is_running,
        active_sessions=await manager.count_active_sessions(),
    )
