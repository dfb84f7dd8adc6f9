"""Tests for the access/refresh token codec."""

from datetime import timedelta

import jwt
import pytest

from sessionguard.services.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
    TokenGenerationFailedError,
    WrongAudienceError,
    WrongIssuerError,
)
from sessionguard.services.token_codec import TokenCodec
from sessionguard.services.types import AccessClaims, RefreshClaims, TokenKind

from tests.conftest import ACCESS_SECRET, REFRESH_SECRET


def make_access_claims(clock, **overrides) -> AccessClaims:
    values = {
        "subject_id": "u1",
        "session_id": "s" * 64,
        "role": "INSTRUCTOR",
        "permissions": ("course:read", "course:write"),
        "device_fingerprint": "fp-desktop",
        "ip_address": "203.0.113.7",
        "issued_at": clock(),
        "expires_at": clock() + timedelta(minutes=15),
        "token_id": "a1b2c3",
    }
    values.update(overrides)
    return AccessClaims(**values)


def make_refresh_claims(clock, **overrides) -> RefreshClaims:
    values = {
        "subject_id": "u1",
        "session_id": "s" * 64,
        "device_fingerprint": "fp-desktop",
        "issued_at": clock(),
        "expires_at": clock() + timedelta(days=7),
        "token_id": "r1",
    }
    values.update(overrides)
    return RefreshClaims(**values)


class TestTokenCodecConstruction:
    """Secrets are required and must differ."""

    def test_rejects_missing_secret(self):
        with pytest.raises(ValueError):
            TokenCodec("", REFRESH_SECRET)

    def test_rejects_equal_secrets(self):
        with pytest.raises(ValueError, match="differ"):
            TokenCodec(ACCESS_SECRET, ACCESS_SECRET)


class TestIssueAndVerify:
    """Round-trips through issue() and verify()."""

    def test_access_token_round_trip(self, codec, clock):
        claims = make_access_claims(clock, email="kim@example.com", email_verified=True)
        token = codec.issue(TokenKind.ACCESS, claims)

        decoded = codec.verify(TokenKind.ACCESS, token)

        assert decoded == claims
        assert decoded.token_type is TokenKind.ACCESS

    def test_refresh_token_round_trip(self, codec, clock):
        claims = make_refresh_claims(clock)
        token = codec.issue(TokenKind.REFRESH, claims)

        assert codec.verify(TokenKind.REFRESH, token) == claims

    def test_access_token_omits_absent_email(self, codec, clock):
        token = codec.issue(TokenKind.ACCESS, make_access_claims(clock))
        payload = jwt.decode(token, options={"verify_signature": False})

        assert "email" not in payload
        assert "email_verified" not in payload
        assert payload["type"] == "access"
        assert payload["iss"] == "sessionguard"
        assert payload["aud"] == "sessionguard-api"

    def test_refresh_token_carries_no_role(self, codec, clock):
        token = codec.issue(TokenKind.REFRESH, make_refresh_claims(clock))
        payload = jwt.decode(token, options={"verify_signature": False})

        assert "role" not in payload
        assert "perms" not in payload

    def test_issue_rejects_kind_mismatch(self, codec, clock):
        with pytest.raises(TokenGenerationFailedError):
            codec.issue(TokenKind.REFRESH, make_access_claims(clock))


class TestVerifyRejections:
    """verify() raises the specific error for each failure."""

    def test_access_token_does_not_verify_as_refresh(self, codec, clock):
        token = codec.issue(TokenKind.ACCESS, make_access_claims(clock))

        with pytest.raises(InvalidSignatureError):
            codec.verify(TokenKind.REFRESH, token)

    def test_wrong_secret(self, codec, clock):
        other = TokenCodec("another-access-secret-" + "z" * 32, REFRESH_SECRET, clock=clock)
        token = other.issue(TokenKind.ACCESS, make_access_claims(clock))

        with pytest.raises(InvalidSignatureError):
            codec.verify(TokenKind.ACCESS, token)

    def test_wrong_audience(self, codec, clock):
        other = TokenCodec(ACCESS_SECRET, REFRESH_SECRET, audience="someone-else", clock=clock)
        token = other.issue(TokenKind.ACCESS, make_access_claims(clock))

        with pytest.raises(WrongAudienceError):
            codec.verify(TokenKind.ACCESS, token)

    def test_wrong_issuer(self, codec, clock):
        other = TokenCodec(ACCESS_SECRET, REFRESH_SECRET, issuer="impostor", clock=clock)
        token = other.issue(TokenKind.ACCESS, make_access_claims(clock))

        with pytest.raises(WrongIssuerError):
            codec.verify(TokenKind.ACCESS, token)

    def test_type_claim_must_match_kind(self, codec, clock):
        # Right secret, wrong "type" claim
        payload = {
            "sub": "u1",
            "sid": "s1",
            "type": "refresh",
            "jti": "x",
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(minutes=5)).timestamp()),
            "iss": codec.issuer,
            "aud": codec.audience,
            "dfp": "fp",
        }
        token = jwt.encode(payload, ACCESS_SECRET, algorithm="HS256")

        with pytest.raises(InvalidTokenError, match="Not a access token"):
            codec.verify(TokenKind.ACCESS, token)

    def test_missing_custom_claim_is_invalid(self, codec, clock):
        payload = {
            "sub": "u1",
            "sid": "s1",
            "type": "access",
            "jti": "x",
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(minutes=5)).timestamp()),
            "iss": codec.issuer,
            "aud": codec.audience,
            "dfp": "fp",
        }
        token = jwt.encode(payload, ACCESS_SECRET, algorithm="HS256")

        with pytest.raises(InvalidTokenError, match="Malformed"):
            codec.verify(TokenKind.ACCESS, token)

    def test_garbage(self, codec):
        with pytest.raises(InvalidTokenError):
            codec.verify(TokenKind.ACCESS, "not-a-jwt")


class TestExpiry:
    """Expiry follows the injected clock."""

    def test_expired_after_clock_passes_exp(self, codec, clock):
        token = codec.issue(TokenKind.ACCESS, make_access_claims(clock))
        clock.advance(minutes=15)

        with pytest.raises(TokenExpiredError):
            codec.verify(TokenKind.ACCESS, token)

    def test_valid_just_before_exp(self, codec, clock):
        token = codec.issue(TokenKind.ACCESS, make_access_claims(clock))
        clock.advance(minutes=14, seconds=59)

        assert codec.verify(TokenKind.ACCESS, token).subject_id == "u1"

    def test_ignore_expiration_still_checks_signature(self, codec, clock):
        token = codec.issue(TokenKind.ACCESS, make_access_claims(clock))
        clock.advance(days=1)

        claims = codec.verify(TokenKind.ACCESS, token, ignore_expiration=True)
        assert claims.subject_id == "u1"

        with pytest.raises(InvalidSignatureError):
            codec.verify(TokenKind.REFRESH, token, ignore_expiration=True)

    def test_peek_expiry(self, codec, clock):
        claims = make_access_claims(clock)
        token = codec.issue(TokenKind.ACCESS, claims)

        assert codec.peek_expiry(token) == claims.expires_at
        assert codec.peek_expiry("garbage") is None
