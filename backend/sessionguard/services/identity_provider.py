"""Identity provider adapter.

The session core treats the provider as an opaque token issuer/verifier plus
two admin operations. :class:`HttpIdentityProvider` verifies RS256 identity
tokens against the provider's JWKS and calls its admin API with httpx.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import jwt
from jwt.exceptions import PyJWTError

from .errors import IdentityProviderError, InvalidTokenError, TokenExpiredError
from .types import CustomClaims, IdentityClaims

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def verify_identity_token(self, raw_token: str) -> IdentityClaims:
        """Verify a provider-issued token. Raises InvalidTokenError."""
        ...

    async def revoke_all_sessions_for_subject(self, subject_id: str) -> None:
        """Revoke every provider-side session. Raises IdentityProviderError."""
        ...

    async def lookup_current_claims(self, subject_id: str) -> CustomClaims:
        """Fetch the subject's current claims. Raises IdentityProviderError."""
        ...


def custom_claims_from_mapping(data: dict[str, Any], default_role: str) -> CustomClaims:
    """Build :class:`CustomClaims` from provider JSON, tolerating absent fields."""
    permissions = data.get("permissions") or []
    if not isinstance(permissions, list):
        permissions = []
    return CustomClaims(
        role=str(data.get("role") or default_role),
        permissions=tuple(str(p) for p in permissions),
        profile_complete=bool(data.get("profile_complete", False)),
    )


class HttpIdentityProvider:
    """JWKS-backed token verification plus HTTP admin calls."""

    ALGORITHMS = ["RS256"]

    def __init__(
        self,
        jwks_url: str,
        admin_url: str,
        *,
        api_key: str | None = None,
        issuer: str | None = None,
        audience: str | None = None,
        default_role: str = "STUDENT",
        timeout: float = 5.0,
        jwk_client: jwt.PyJWKClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.admin_url = admin_url.rstrip("/")
        self.issuer = issuer
        self.audience = audience
        self.default_role = default_role
        self.timeout = timeout
        self._api_key = api_key
        self._jwk_client = jwk_client or jwt.PyJWKClient(jwks_url, cache_keys=True)
        self._client = http_client
        self._client_lock = asyncio.Lock()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.AsyncClient(timeout=self.timeout)
            return self._client

    async def verify_identity_token(self, raw_token: str) -> IdentityClaims:
        try:
            # PyJWKClient fetches keys with blocking urllib
            signing_key = await asyncio.to_thread(
                self._jwk_client.get_signing_key_from_jwt, raw_token
            )
            payload = jwt.decode(
                raw_token,
                signing_key.key,
                algorithms=self.ALGORITHMS,
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": ["sub", "iat", "exp"],
                    "verify_aud": self.audience is not None,
                    "verify_iss": self.issuer is not None,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("Identity token has expired") from e
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid identity token: {e}") from e

        subject_id = str(payload.get("sub") or "").strip()
        if not subject_id:
            raise InvalidTokenError("Identity token has no subject")

        return IdentityClaims(
            subject_id=subject_id,
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=UTC),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
            custom_claims=custom_claims_from_mapping(payload, self.default_role),
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", False)),
        )

    async def revoke_all_sessions_for_subject(self, subject_id: str) -> None:
        await self._admin_request("POST", f"/subjects/{subject_id}/revoke")
        logger.info(f"Revoked identity provider sessions for subject {subject_id}")

    async def lookup_current_claims(self, subject_id: str) -> CustomClaims:
        response = await self._admin_request("GET", f"/subjects/{subject_id}/claims")
        try:
            data = response.json()
        except ValueError as e:
            raise IdentityProviderError("Identity provider returned invalid JSON") from e
        if not isinstance(data, dict):
            raise IdentityProviderError("Identity provider returned unexpected claims payload")
        return custom_claims_from_mapping(data, self.default_role)

    async def _admin_request(self, method: str, path: str) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method, f"{self.admin_url}{path}", headers=self._get_headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise IdentityProviderError(
                f"Identity provider returned {e.response.status_code} for {method} {path}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Identity provider request failed: {e}") from e
        return response

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
