# SessionGuard Models
from sessionguard.models.blacklisted_token import BlacklistedToken
from sessionguard.models.refresh_token import RefreshTokenRecord
from sessionguard.models.user_session import UserSessionRecord

__all__ = [
    "BlacklistedToken",
    "RefreshTokenRecord",
    "UserSessionRecord",
]
