"""Signed access/refresh token encoding with PyJWT.

Access and refresh tokens are signed with different secrets. Expiry is checked
against the codec's clock instead of PyJWT's wall clock, so
``ignore_expiration`` only skips that one check while signature, issuer and
audience are always enforced.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from sessionguard.core.clock import Clock, utc_now

from .errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
    TokenGenerationFailedError,
    WrongAudienceError,
    WrongIssuerError,
)
from .types import AccessClaims, RefreshClaims, TokenClaims, TokenKind

logger = logging.getLogger(__name__)

REGISTERED_CLAIMS = ["sub", "sid", "type", "jti", "iat", "exp", "iss", "aud"]


def _to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=UTC)


class TokenCodec:
    """Stateless encoder/decoder for the two token kinds."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = "sessionguard",
        audience: str = "sessionguard-api",
        clock: Clock = utc_now,
    ):
        if not access_secret or not refresh_secret:
            raise ValueError("Both access and refresh secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def issue(self, kind: TokenKind, claims: TokenClaims) -> str:
        """Sign ``claims`` as a token of ``kind``."""
        if claims.token_type != kind:
            raise TokenGenerationFailedError(
                f"Cannot issue {kind.value} token from {claims.token_type.value} claims"
            )

        payload: dict[str, Any] = {
            "sub": claims.subject_id,
            "sid": claims.session_id,
            "type": kind.value,
            "jti": claims.token_id,
            "iat": _to_timestamp(claims.issued_at),
            "exp": _to_timestamp(claims.expires_at),
            "iss": self.issuer,
            "aud": self.audience,
            "dfp": claims.device_fingerprint,
        }
        if isinstance(claims, AccessClaims):
            payload.update(
                role=claims.role,
                perms=list(claims.permissions),
                ip=claims.ip_address,
            )
            if claims.email is not None:
                payload["email"] = claims.email
            if claims.email_verified is not None:
                payload["email_verified"] = claims.email_verified

        try:
            token = jwt.encode(payload, self._secrets[kind], algorithm=self.algorithm)
        except (PyJWTError, TypeError, ValueError) as e:
            raise TokenGenerationFailedError(f"Failed to sign {kind.value} token: {e}") from e
        return str(token)

    def verify(
        self, kind: TokenKind, token: str, *, ignore_expiration: bool = False
    ) -> TokenClaims:
        """Verify ``token`` and return its typed claims.

        Raises:
            InvalidSignatureError: Signature does not match the ``kind`` secret
            WrongAudienceError: ``aud`` is not this service
            WrongIssuerError: ``iss`` is not this service
            InvalidTokenError: Malformed token, missing claims or wrong ``type``
            TokenExpiredError: ``exp`` has passed (unless ``ignore_expiration``)
        """
        payload = self._decode(kind, token)

        if payload.get("type") != kind.value:
            raise InvalidTokenError(f"Not a {kind.value} token")

        try:
            claims = self._build_claims(kind, payload)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTokenError(f"Malformed {kind.value} token claims") from e

        if not ignore_expiration and claims.expires_at <= self._clock():
            raise TokenExpiredError("Token has expired")
        return claims

    def peek_expiry(self, token: str) -> datetime | None:
        """Read ``exp`` without verifying anything; ``None`` if unreadable."""
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
            return _from_timestamp(payload["exp"])
        except (PyJWTError, KeyError, TypeError, ValueError, OverflowError):
            return None

    def is_expired(self, expires_at: datetime) -> bool:
        return expires_at <= self._clock()

    def _decode(self, kind: TokenKind, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": REGISTERED_CLAIMS,
                },
            )
        except jwt.InvalidAudienceError as e:
            raise WrongAudienceError("Token audience mismatch") from e
        except jwt.InvalidIssuerError as e:
            raise WrongIssuerError("Token issuer mismatch") from e
        except jwt.InvalidSignatureError as e:
            raise InvalidSignatureError("Token signature verification failed") from e
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

    @staticmethod
    def _build_claims(kind: TokenKind, payload: dict[str, Any]) -> TokenClaims:
        common = {
            "subject_id": str(payload["sub"]),
            "session_id": str(payload["sid"]),
            "device_fingerprint": str(payload["dfp"]),
            "issued_at": _from_timestamp(payload["iat"]),
            "expires_at": _from_timestamp(payload["exp"]),
            "token_id": str(payload["jti"]),
        }
        if kind is TokenKind.REFRESH:
            return RefreshClaims(**common)

        perms = payload["perms"]
        if not isinstance(perms, list):
            raise TypeError("perms must be a list")
        email_verified = payload.get("email_verified")
        return AccessClaims(
            **common,
            role=str(payload["role"]),
            permissions=tuple(str(p) for p in perms),
            ip_address=str(payload["ip"]),
            email=payload.get("email"),
            email_verified=bool(email_verified) if email_verified is not None else None,
        )
