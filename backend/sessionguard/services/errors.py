"""Session and token error taxonomy."""

from enum import Enum
from typing import Any


class SessionErrorCode(str, Enum):
    """Machine-readable error codes."""

    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_BLACKLISTED = "TOKEN_BLACKLISTED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    # Codes only: expiry surfaces as SESSION_NOT_FOUND and the cap is resolved by eviction
    SESSION_EXPIRED = "SESSION_EXPIRED"
    MAX_SESSIONS_EXCEEDED = "MAX_SESSIONS_EXCEEDED"
    TOKEN_GENERATION_FAILED = "TOKEN_GENERATION_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    IDENTITY_PROVIDER_ERROR = "IDENTITY_PROVIDER_ERROR"


class SessionError(Exception):
    """Base session management error."""

    code: SessionErrorCode = SessionErrorCode.INVALID_TOKEN

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTokenError(SessionError):
    """Token is malformed, badly signed or of the wrong kind."""

    code = SessionErrorCode.INVALID_TOKEN


class InvalidSignatureError(InvalidTokenError):
    """Token signature does not verify."""


class WrongAudienceError(InvalidTokenError):
    """Token was issued for another audience."""


class WrongIssuerError(InvalidTokenError):
    """Token was issued by someone else."""


class TokenExpiredError(SessionError):
    """Token has expired."""

    code = SessionErrorCode.TOKEN_EXPIRED


class TokenBlacklistedError(SessionError):
    """Token was revoked before its natural expiry."""

    code = SessionErrorCode.TOKEN_BLACKLISTED


class SessionNotFoundError(SessionError):
    """Session does not exist, expired or was terminated."""

    code = SessionErrorCode.SESSION_NOT_FOUND


class TokenGenerationFailedError(SessionError):
    """Infrastructure failure while issuing tokens."""

    code = SessionErrorCode.TOKEN_GENERATION_FAILED


class InvalidInputError(SessionError):
    code = SessionErrorCode.INVALID_INPUT


class IdentityProviderError(SessionError):
    """The identity provider could not be reached or rejected an admin call."""

    code = SessionErrorCode.IDENTITY_PROVIDER_ERROR
