"""Domain records shared by the session services.

Every record is a closed dataclass with explicit optional fields; token claims
come in two tagged variants (:class:`AccessClaims`, :class:`RefreshClaims`).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar


class TokenKind(str, Enum):
    """Which secret and claim layout a token uses."""

    ACCESS = "access"
    REFRESH = "refresh"


class LoginMethod(str, Enum):
    EMAIL_PASSWORD = "EMAIL_PASSWORD"
    GOOGLE_OAUTH = "GOOGLE_OAUTH"
    MICROSOFT_OAUTH = "MICROSOFT_OAUTH"
    STATIC_ADMIN = "STATIC_ADMIN"


class SessionAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    PERMISSION_CHECK = "PERMISSION_CHECK"
    ROUTE_ACCESS = "ROUTE_ACCESS"
    API_CALL = "API_CALL"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


class DeviceRiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ValidationStatus(str, Enum):
    """Tri-state outcome of a token validation query."""

    VALID = "valid"
    INVALID = "invalid"
    BLACKLISTED = "blacklisted"


class SessionEvent(str, Enum):
    """Audit event kinds."""

    SESSION_CREATED = "session_created"
    SESSION_TERMINATED = "session_terminated"
    TOKEN_PAIR_ISSUED = "token_pair_issued"
    TOKEN_PAIR_REFRESHED = "token_pair_refreshed"
    TOKEN_BLACKLISTED = "token_blacklisted"
    SUBJECT_REVOKED = "subject_revoked"
    NEW_DEVICE_LOGIN = "new_device_login"
    SWEEP_COMPLETED = "sweep_completed"


@dataclass(frozen=True)
class DeviceInfo:
    """Client-reported device characteristics."""

    fingerprint: str
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

    @property
    def device_type(self) -> str:
        if self.is_mobile:
            return "Mobile"
        if self.is_tablet:
            return "Tablet"
        return "Desktop"


@dataclass(frozen=True)
class CustomClaims:
    """Authorization claims carried by the identity provider."""

    role: str
    permissions: tuple[str, ...] = ()
    profile_complete: bool = False


@dataclass(frozen=True)
class IdentityClaims:
    """Verified identity-provider token contents."""

    subject_id: str
    issued_at: datetime
    expires_at: datetime
    custom_claims: CustomClaims
    email: str | None = None
    email_verified: bool = False


@dataclass(frozen=True)
class AccessClaims:
    TOKEN_TYPE: ClassVar[TokenKind] = TokenKind.ACCESS

    subject_id: str
    session_id: str
    role: str
    permissions: tuple[str, ...]
    device_fingerprint: str
    ip_address: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    email: str | None = None
    email_verified: bool | None = None

    @property
    def token_type(self) -> TokenKind:
        return self.TOKEN_TYPE


@dataclass(frozen=True)
class RefreshClaims:
    TOKEN_TYPE: ClassVar[TokenKind] = TokenKind.REFRESH

    subject_id: str
    session_id: str
    device_fingerprint: str
    issued_at: datetime
    expires_at: datetime
    token_id: str

    @property
    def token_type(self) -> TokenKind:
        return self.TOKEN_TYPE


TokenClaims = AccessClaims | RefreshClaims


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass
class CreateSessionData:
    """Everything needed to open a session and issue its first token pair."""

    subject_id: str
    device_info: DeviceInfo
    ip_address: str
    user_agent: str
    claims: CustomClaims
    login_method: LoginMethod = LoginMethod.EMAIL_PASSWORD
    email: str | None = None
    email_verified: bool | None = None


@dataclass
class Session:
    session_id: str
    subject_id: str
    device_fingerprint: str
    device_info: DeviceInfo
    ip_address: str
    user_agent: str
    login_method: LoginMethod
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool = True
    terminated_at: datetime | None = None
    termination_reason: str | None = None
    activity_count: int = 0
    suspicious_activity_count: int = 0


@dataclass
class SessionActivity:
    action: SessionAction
    timestamp: datetime | None = None
    resource: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class BlacklistEntry:
    token_hash: str
    subject_id: str
    blacklisted_at: datetime
    expires_at: datetime
    reason: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class RefreshRegistration:
    """A refresh token the server still honours."""

    token_id: str
    subject_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class TrackedDevice:
    device_id: str
    device_fingerprint: str
    device_info: DeviceInfo
    first_seen_at: datetime
    last_seen_at: datetime
    subject_id: str | None = None
    session_count: int = 1
    is_current_device: bool = False
    is_trusted: bool = False
    risk_level: DeviceRiskLevel = DeviceRiskLevel.LOW


@dataclass
class TokenValidationResult:
    is_valid: bool
    is_expired: bool = False
    is_blacklisted: bool = False
    payload: TokenClaims | None = None
    error: str | None = None

    @property
    def status(self) -> ValidationStatus:
        if self.is_blacklisted:
            return ValidationStatus.BLACKLISTED
        if self.is_valid:
            return ValidationStatus.VALID
        return ValidationStatus.INVALID


@dataclass
class IdentityValidationResult:
    """Outcome of checking a provider-issued identity token."""

    is_valid: bool
    is_expired: bool = False
    is_blacklisted: bool = False
    claims: IdentityClaims | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeviceTypeStats:
    device_type: str
    count: int
    percentage: float


@dataclass(frozen=True)
class LocationStats:
    location: str
    count: int
    percentage: float


@dataclass
class SessionStats:
    total_sessions: int = 0
    active_sessions: int = 0
    expired_sessions: int = 0
    terminated_sessions: int = 0
    average_session_duration_seconds: float = 0.0
    unique_devices: int = 0
    suspicious_activities: int = 0
    top_device_types: list[DeviceTypeStats] = field(default_factory=list)
    top_locations: list[LocationStats] = field(default_factory=list)
