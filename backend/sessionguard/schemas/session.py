"""Pydantic schemas for the session API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from sessionguard.services.types import DeviceInfo, DeviceRiskLevel, LoginMethod


class DeviceInfoSchema(BaseModel):
    """Client-reported device characteristics."""

    model_config = ConfigDict(from_attributes=True)

    fingerprint: str = Field(..., min_length=1, max_length=255)
    platform: str = ""
    browser: str = ""
    browser_version: str = ""
    os: str = ""
    os_version: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""
    is_mobile: bool = False
    is_tablet: bool = False
    is_desktop: bool = True

    def to_device_info(self) -> DeviceInfo:
        return DeviceInfo(**self.model_dump())


class SessionExchangeRequest(BaseModel):
    """Exchange an identity-provider token for a session token pair."""

    id_token: str = Field(..., min_length=1)
    device_info: DeviceInfoSchema
    login_method: LoginMethod = LoginMethod.EMAIL_PASSWORD


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Logout with optional refresh token revocation."""

    refresh_token: str | None = Field(
        None,
        description="Refresh token to revoke. If provided, it is blacklisted to prevent reuse.",
    )


class RevokeAllRequest(BaseModel):
    reason: str | None = Field(None, max_length=255)


class TokenPairResponse(BaseModel):
    """Response with a session token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    expires_in: int = Field(description="Access token expiry in seconds")


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    device_fingerprint: str
    device_info: DeviceInfoSchema
    ip_address: str
    user_agent: str
    login_method: LoginMethod
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool
    activity_count: int
    is_current: bool = False


class DeviceTypeStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_type: str
    count: int
    percentage: float


class LocationStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    location: str
    count: int
    percentage: float


class SessionStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_sessions: int
    active_sessions: int
    expired_sessions: int
    terminated_sessions: int
    average_session_duration_seconds: float
    unique_devices: int
    suspicious_activities: int
    top_device_types: list[DeviceTypeStatsResponse]
    top_locations: list[LocationStatsResponse]


class TrackedDeviceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    device_fingerprint: str
    device_info: DeviceInfoSchema
    first_seen_at: datetime
    last_seen_at: datetime
    session_count: int
    is_current_device: bool
    is_trusted: bool
    risk_level: DeviceRiskLevel


class RevokeAllResponse(BaseModel):
    sessions_terminated: int


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
