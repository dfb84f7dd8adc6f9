# SessionGuard Pydantic Schemas
from sessionguard.schemas.session import (
    DeviceInfoSchema,
    DeviceTypeStatsResponse,
    LocationStatsResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RevokeAllRequest,
    RevokeAllResponse,
    SessionExchangeRequest,
    SessionResponse,
    SessionStatsResponse,
    TokenPairResponse,
    TrackedDeviceResponse,
)

__all__ = [
    "DeviceInfoSchema",
    "DeviceTypeStatsResponse",
    "LocationStatsResponse",
    "LogoutRequest",
    "MessageResponse",
    "RefreshRequest",
    "RevokeAllRequest",
    "RevokeAllResponse",
    "SessionExchangeRequest",
    "SessionResponse",
    "SessionStatsResponse",
    "TokenPairResponse",
    "TrackedDeviceResponse",
]
