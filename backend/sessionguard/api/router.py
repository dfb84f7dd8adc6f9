"""SessionGuard API Router - aggregates the authenticated /api routes."""

from fastapi import APIRouter

from sessionguard.api import sessions

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(sessions.router)
api_router.include_router(sessions.devices_router)
