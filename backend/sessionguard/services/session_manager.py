"""Session Manager - the public session and token lifecycle API.

Composes the token codec, the revocation store, the session store and the
device tracker. Validation methods are queries: they return a
:class:`TokenValidationResult` and never raise for bad input. Issuance and
mutation methods raise :mod:`sessionguard.services.errors` exceptions on
genuine failure; terminate and blacklist treat "already gone" as success.

Identity provider calls are bounded by a timeout and are never awaited while
a store lock is held.
"""

import asyncio
import logging
import secrets
from collections import Counter
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sessionguard.core.clock import Clock, utc_now
from sessionguard.core.config import Settings

from .audit import AuditLogger, AuditSink
from .device_tracker import DeviceTracker
from .errors import (
    InvalidInputError,
    InvalidTokenError,
    SessionError,
    SessionNotFoundError,
    TokenBlacklistedError,
    TokenExpiredError,
    TokenGenerationFailedError,
)
from .identity_provider import IdentityProvider
from .revocation_store import RevocationStore, hash_token
from .session_store import SessionStore
from .token_codec import TokenCodec
from .types import (
    AccessClaims,
    CreateSessionData,
    CustomClaims,
    DeviceInfo,
    DeviceTypeStats,
    IdentityValidationResult,
    LocationStats,
    LoginMethod,
    RefreshClaims,
    RefreshRegistration,
    Session,
    SessionAction,
    SessionActivity,
    SessionEvent,
    SessionStats,
    TokenKind,
    TokenPair,
    TokenValidationResult,
    TrackedDevice,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROTATED_REASON = "Refresh token rotated"
UNKNOWN_LOCATION = "Unknown"


class SessionManager:
    """Owns the session lifecycle and the periodic expiry sweep.

    The sweep task is started with :meth:`start` and stopped with
    :meth:`stop`; :meth:`sweep` can also be called directly.
    """

    def __init__(
        self,
        codec: TokenCodec,
        revocation_store: RevocationStore,
        session_store: SessionStore,
        device_tracker: DeviceTracker,
        *,
        identity_provider: IdentityProvider | None = None,
        audit: AuditSink | None = None,
        clock: Clock = utc_now,
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
        identity_provider_timeout: float = 5.0,
        cleanup_interval: float = 3600.0,
        enable_device_tracking: bool = True,
    ):
        self.codec = codec
        self.revocation_store = revocation_store
        self.session_store = session_store
        self.device_tracker = device_tracker
        self.identity_provider = identity_provider
        self.audit = audit or AuditLogger()
        self._clock = clock
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.identity_provider_timeout = identity_provider_timeout
        self.cleanup_interval = cleanup_interval
        self.enable_device_tracking = enable_device_tracking
        self._running = False
        self._task: asyncio.Task | None = None

    # --- Token issuance ---

    async def issue_token_pair(self, data: CreateSessionData) -> TokenPair:
        """Open a session for ``data`` and issue its first token pair.

        Raises:
            InvalidInputError: Blank subject id
            TokenGenerationFailedError: Signing or registration failed; the
                session opened for this call is terminated again
        """
        self._require_subject(data.subject_id)
        new_device = self.enable_device_tracking and await self.device_tracker.is_new_device(
            data.subject_id, data.device_info.fingerprint
        )

        session = await self.session_store.create(data)
        try:
            pair = await self._issue_pair(
                session,
                data.claims,
                email=data.email,
                email_verified=data.email_verified,
            )
        except Exception as e:
            await self.session_store.terminate(session.session_id, "Token generation failed")
            logger.error(f"Token issuance failed for subject {data.subject_id}: {e}")
            if isinstance(e, TokenGenerationFailedError):
                raise
            raise TokenGenerationFailedError("Failed to generate token pair") from e

        if self.enable_device_tracking:
            await self.device_tracker.track(data.device_info, data.subject_id)
            if new_device:
                self._record(
                    SessionEvent.NEW_DEVICE_LOGIN,
                    subject_id=data.subject_id,
                    session_id=session.session_id,
                    device_type=data.device_info.device_type,
                    ip_address=data.ip_address,
                )

        self._record(
            SessionEvent.SESSION_CREATED,
            subject_id=data.subject_id,
            session_id=session.session_id,
            login_method=data.login_method.value,
        )
        self._record(
            SessionEvent.TOKEN_PAIR_ISSUED,
            subject_id=data.subject_id,
            session_id=session.session_id,
        )
        return pair

    async def exchange_identity_token(
        self,
        identity_token: str,
        device_info: DeviceInfo,
        ip_address: str,
        user_agent: str,
        login_method: LoginMethod = LoginMethod.EMAIL_PASSWORD,
    ) -> TokenPair:
        """Trade a provider-issued identity token for a session token pair."""
        result = await self.validate_identity_token(identity_token)
        if result.is_blacklisted:
            raise TokenBlacklistedError("Identity token has been revoked")
        if result.is_expired:
            raise TokenExpiredError("Identity token has expired")
        if not result.is_valid or result.claims is None:
            raise InvalidTokenError(result.error or "Invalid identity token")

        claims = result.claims
        return await self.issue_token_pair(
            CreateSessionData(
                subject_id=claims.subject_id,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
                claims=claims.custom_claims,
                login_method=login_method,
                email=claims.email,
                email_verified=claims.email_verified,
            )
        )

    async def refresh_token_pair(self, refresh_token: str) -> TokenPair:
        """Rotate ``refresh_token`` into a new pair bound to the same session.

        Claims are re-derived from the identity provider on every refresh.
        The old refresh token is blacklisted once the new pair exists.

        Raises:
            TokenBlacklistedError / TokenExpiredError / InvalidTokenError:
                The refresh token is not usable (or was already used)
            SessionNotFoundError: The session ended or never existed
            TokenGenerationFailedError: Provider lookup or signing failed
        """
        result = await self.validate_refresh_token(refresh_token)
        if result.is_blacklisted:
            raise TokenBlacklistedError("Refresh token has been revoked")
        if result.is_expired:
            raise TokenExpiredError("Refresh token has expired")
        if not result.is_valid or not isinstance(result.payload, RefreshClaims):
            raise InvalidTokenError(result.error or "Invalid refresh token")
        claims = result.payload

        session = await self.session_store.get(claims.session_id)
        if session is None:
            raise SessionNotFoundError("Session not found or expired")

        if self.identity_provider is None:
            raise TokenGenerationFailedError("No identity provider configured for refresh")
        try:
            current_claims = await self._call_provider(
                self.identity_provider.lookup_current_claims(claims.subject_id)
            )
        except Exception as e:
            logger.warning(f"Claims lookup failed for subject {claims.subject_id}: {e}")
            raise TokenGenerationFailedError("Failed to refresh claims from identity provider") from e

        if not await self.revocation_store.consume_refresh(claims.token_id):
            raise InvalidTokenError("Refresh token has already been used")

        try:
            pair = await self._issue_pair(session, current_claims)
        except TokenGenerationFailedError:
            raise
        except Exception as e:
            raise TokenGenerationFailedError("Failed to generate token pair") from e

        await self.revocation_store.blacklist(
            hash_token(refresh_token),
            claims.subject_id,
            claims.expires_at,
            reason=ROTATED_REASON,
            session_id=claims.session_id,
        )
        await self.session_store.touch(
            session.session_id, SessionActivity(action=SessionAction.TOKEN_REFRESH)
        )
        self._record(
            SessionEvent.TOKEN_PAIR_REFRESHED,
            subject_id=claims.subject_id,
            session_id=session.session_id,
        )
        return pair

    async def _issue_pair(
        self,
        session: Session,
        claims: CustomClaims,
        *,
        email: str | None = None,
        email_verified: bool | None = None,
    ) -> TokenPair:
        # Whole seconds so the encoded timestamps read back unchanged
        now = self._clock().replace(microsecond=0)
        access_claims = AccessClaims(
            subject_id=session.subject_id,
            session_id=session.session_id,
            role=claims.role,
            permissions=claims.permissions,
            device_fingerprint=session.device_fingerprint,
            ip_address=session.ip_address,
            issued_at=now,
            expires_at=now + self.access_token_ttl,
            token_id=secrets.token_hex(16),
            email=email,
            email_verified=email_verified,
        )
        refresh_claims = RefreshClaims(
            subject_id=session.subject_id,
            session_id=session.session_id,
            device_fingerprint=session.device_fingerprint,
            issued_at=now,
            expires_at=now + self.refresh_token_ttl,
            token_id=secrets.token_hex(16),
        )

        access_token = self.codec.issue(TokenKind.ACCESS, access_claims)
        refresh_token = self.codec.issue(TokenKind.REFRESH, refresh_claims)
        await self.revocation_store.register_refresh(
            RefreshRegistration(
                token_id=refresh_claims.token_id,
                subject_id=refresh_claims.subject_id,
                session_id=refresh_claims.session_id,
                issued_at=refresh_claims.issued_at,
                expires_at=refresh_claims.expires_at,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_claims.expires_at,
            refresh_token_expires_at=refresh_claims.expires_at,
        )

    # --- Validation (never raises for bad tokens) ---

    async def validate_access_token(self, token: str) -> TokenValidationResult:
        return await self._validate(TokenKind.ACCESS, token)

    async def validate_refresh_token(self, token: str) -> TokenValidationResult:
        """Like access validation, plus the token must still be registered."""
        result = await self._validate(TokenKind.REFRESH, token)
        if not result.is_valid or result.payload is None:
            return result
        try:
            registered = await self.revocation_store.is_refresh_registered(result.payload.token_id)
        except Exception:
            logger.exception("Refresh registry lookup failed")
            return TokenValidationResult(is_valid=False, error="Token validation failed")
        if not registered:
            return TokenValidationResult(is_valid=False, error="Refresh token is not recognized")
        return result

    async def _validate(self, kind: TokenKind, token: str) -> TokenValidationResult:
        if not token:
            return TokenValidationResult(is_valid=False, error="Token is required")
        try:
            if await self.revocation_store.is_blacklisted(hash_token(token)):
                return TokenValidationResult(
                    is_valid=False, is_blacklisted=True, error="Token has been blacklisted"
                )
            claims = self.codec.verify(kind, token)
        except TokenExpiredError as e:
            return TokenValidationResult(is_valid=False, is_expired=True, error=e.message)
        except SessionError as e:
            return TokenValidationResult(
                is_valid=False, is_expired=self._looks_expired(token), error=e.message
            )
        except Exception:
            logger.exception(f"Unexpected error validating {kind.value} token")
            return TokenValidationResult(is_valid=False, error="Token validation failed")
        return TokenValidationResult(is_valid=True, payload=claims)

    def _looks_expired(self, token: str) -> bool:
        expires_at = self.codec.peek_expiry(token)
        return expires_at is not None and self.codec.is_expired(expires_at)

    async def validate_identity_token(self, token: str) -> IdentityValidationResult:
        if not token:
            return IdentityValidationResult(is_valid=False, error="Token is required")
        if self.identity_provider is None:
            return IdentityValidationResult(
                is_valid=False, error="No identity provider configured"
            )
        try:
            if await self.revocation_store.is_blacklisted(hash_token(token)):
                return IdentityValidationResult(
                    is_valid=False, is_blacklisted=True, error="Token has been blacklisted"
                )
            claims = await self._call_provider(
                self.identity_provider.verify_identity_token(token)
            )
        except TokenExpiredError as e:
            return IdentityValidationResult(is_valid=False, is_expired=True, error=e.message)
        except SessionError as e:
            return IdentityValidationResult(is_valid=False, error=e.message)
        except TimeoutError:
            logger.warning("Identity provider timed out verifying token")
            return IdentityValidationResult(is_valid=False, error="Identity provider timed out")
        except Exception:
            logger.exception("Unexpected error validating identity token")
            return IdentityValidationResult(is_valid=False, error="Token validation failed")
        return IdentityValidationResult(is_valid=True, claims=claims)

    def extract_access_token_payload(self, token: str) -> AccessClaims | None:
        """Claims of an authentic access token, even if expired."""
        try:
            claims = self.codec.verify(TokenKind.ACCESS, token, ignore_expiration=True)
        except SessionError:
            return None
        return claims if isinstance(claims, AccessClaims) else None

    def extract_refresh_token_payload(self, token: str) -> RefreshClaims | None:
        try:
            claims = self.codec.verify(TokenKind.REFRESH, token, ignore_expiration=True)
        except SessionError:
            return None
        return claims if isinstance(claims, RefreshClaims) else None

    # --- Revocation (best effort, never raises) ---

    async def blacklist_token_pair(
        self,
        access_token: str,
        refresh_token: str | None = None,
        reason: str | None = None,
    ) -> None:
        """Blacklist both tokens; malformed ones are logged and skipped."""
        for kind, token in ((TokenKind.ACCESS, access_token), (TokenKind.REFRESH, refresh_token)):
            if not token:
                continue
            try:
                claims = self.codec.verify(kind, token, ignore_expiration=True)
            except SessionError as e:
                logger.warning(f"Not blacklisting malformed {kind.value} token: {e.message}")
                continue
            try:
                await self.revocation_store.blacklist(
                    hash_token(token),
                    claims.subject_id,
                    claims.expires_at,
                    reason=reason,
                    session_id=claims.session_id,
                )
                if kind is TokenKind.REFRESH:
                    await self.revocation_store.consume_refresh(claims.token_id)
            except Exception as e:
                logger.warning(f"Failed to blacklist {kind.value} token: {e}")
                continue
            self._record(
                SessionEvent.TOKEN_BLACKLISTED,
                subject_id=claims.subject_id,
                session_id=claims.session_id,
                token_type=kind.value,
                reason=reason,
            )

    async def blacklist_identity_token(self, token: str, reason: str | None = None) -> None:
        """Blacklist a provider-issued identity token until it expires."""
        if not token or self.identity_provider is None:
            return
        try:
            claims = await self._call_provider(
                self.identity_provider.verify_identity_token(token)
            )
        except TokenExpiredError:
            return
        except Exception as e:
            logger.warning(f"Not blacklisting unverifiable identity token: {e}")
            return
        try:
            await self.revocation_store.blacklist(
                hash_token(token), claims.subject_id, claims.expires_at, reason=reason
            )
        except Exception as e:
            logger.warning(f"Failed to blacklist identity token: {e}")
            return
        self._record(
            SessionEvent.TOKEN_BLACKLISTED,
            subject_id=claims.subject_id,
            token_type="identity",
            reason=reason,
        )

    # --- Sessions ---

    async def create_session(self, data: CreateSessionData) -> Session:
        """Open a session without issuing tokens."""
        self._require_subject(data.subject_id)
        session = await self.session_store.create(data)
        self._record(
            SessionEvent.SESSION_CREATED,
            subject_id=session.subject_id,
            session_id=session.session_id,
            login_method=session.login_method.value,
        )
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return await self.session_store.get(session_id)

    async def list_sessions_for_subject(self, subject_id: str) -> list[Session]:
        return await self.session_store.list_by_subject(subject_id)

    async def touch_session(self, session_id: str, activity: SessionActivity) -> bool:
        return await self.session_store.touch(session_id, activity)

    async def terminate_session(self, session_id: str, reason: str | None = None) -> bool:
        """End one session. Returns ``False`` if it was already gone."""
        terminated = await self.session_store.terminate(session_id, reason)
        if terminated:
            self._record(SessionEvent.SESSION_TERMINATED, session_id=session_id, reason=reason)
        return terminated

    async def terminate_all_sessions_for_subject(
        self, subject_id: str, reason: str | None = None
    ) -> int:
        """End every session of ``subject_id`` and revoke provider-side sessions.

        Local revocation always completes; a failing or slow identity
        provider is logged and ignored.
        """
        count = await self.session_store.terminate_all_for_subject(subject_id, reason)
        relabelled = await self.revocation_store.blacklist_all_for_subject(subject_id, reason)
        revoked_refresh = await self.revocation_store.revoke_refresh_for_subject(subject_id)

        provider_revoked = False
        if self.identity_provider is not None:
            try:
                await self._call_provider(
                    self.identity_provider.revoke_all_sessions_for_subject(subject_id)
                )
                provider_revoked = True
            except Exception as e:
                logger.warning(f"Identity provider revocation failed for subject {subject_id}: {e}")

        self._record(
            SessionEvent.SUBJECT_REVOKED,
            subject_id=subject_id,
            sessions_terminated=count,
            blacklist_entries_relabelled=relabelled,
            refresh_tokens_revoked=revoked_refresh,
            provider_revoked=provider_revoked,
            reason=reason,
        )
        return count

    # --- Devices ---

    async def track_device(
        self, device_info: DeviceInfo, subject_id: str | None = None
    ) -> TrackedDevice:
        return await self.device_tracker.track(device_info, subject_id)

    async def is_new_device(self, subject_id: str, fingerprint: str) -> bool:
        return await self.device_tracker.is_new_device(subject_id, fingerprint)

    async def device_history(self, subject_id: str) -> list[TrackedDevice]:
        return await self.device_tracker.history(subject_id)

    # --- Analytics ---

    async def count_active_sessions(self) -> int:
        return await self.session_store.count_active()

    async def list_sessions_by_created_range(self, start: datetime, end: datetime) -> list[Session]:
        return await self.session_store.list_by_created_range(start, end)

    async def get_session_stats(self, subject_id: str | None = None) -> SessionStats:
        """Aggregate counts and device/location breakdowns.

        Covers live sessions and the ended sessions the store still retains.
        Locations are the client-reported timezones.
        """
        sessions = await self.session_store.snapshot(subject_id)
        if not sessions:
            return SessionStats()

        now = self._clock()
        terminated = [s for s in sessions if s.terminated_at is not None]
        durations = [(s.terminated_at - s.created_at).total_seconds() for s in terminated]  # type: ignore[operator]
        total = len(sessions)

        device_types = Counter(s.device_info.device_type for s in sessions)
        locations = Counter(s.device_info.timezone or UNKNOWN_LOCATION for s in sessions)

        return SessionStats(
            total_sessions=total,
            active_sessions=sum(1 for s in sessions if s.is_active and s.expires_at > now),
            expired_sessions=sum(
                1 for s in sessions if s.terminated_at is None and s.expires_at <= now
            ),
            terminated_sessions=len(terminated),
            average_session_duration_seconds=sum(durations) / len(durations) if durations else 0.0,
            unique_devices=len({s.device_fingerprint for s in sessions}),
            suspicious_activities=sum(s.suspicious_activity_count for s in sessions),
            top_device_types=[
                DeviceTypeStats(device_type=name, count=count, percentage=count / total * 100)
                for name, count in device_types.most_common()
            ],
            top_locations=[
                LocationStats(location=name, count=count, percentage=count / total * 100)
                for name, count in locations.most_common()
            ],
        )

    # --- Maintenance ---

    async def sweep(self) -> dict[str, int]:
        """One maintenance pass. Each step's failure is logged, never raised."""
        counts = {
            "blacklist_entries": 0,
            "refresh_registrations": 0,
            "sessions": 0,
            "devices": 0,
        }
        steps: list[tuple[str, Any]] = [
            ("blacklist_entries", self.revocation_store.sweep_expired),
            ("refresh_registrations", self.revocation_store.sweep_refresh_registry),
            ("sessions", self.session_store.sweep_expired),
            ("devices", self.device_tracker.sweep_stale),
        ]
        for name, step in steps:
            try:
                counts[name] = await step()
            except Exception:
                logger.exception(f"Error sweeping expired {name}")

        if any(counts.values()):
            logger.info(
                f"Sweep removed {counts['blacklist_entries']} blacklist entries, "
                f"{counts['refresh_registrations']} refresh registrations, "
                f"expired {counts['sessions']} sessions, "
                f"forgot {counts['devices']} stale devices"
            )
        self._record(SessionEvent.SWEEP_COMPLETED, **counts)
        return counts

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            logger.warning("Session sweep is already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="session-sweep")
        logger.info(f"Session sweep started (every {self.cleanup_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session sweep stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in session sweep")

    # --- Helpers ---

    async def _call_provider(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.identity_provider_timeout)

    @staticmethod
    def _require_subject(subject_id: str) -> None:
        if not subject_id or not subject_id.strip():
            raise InvalidInputError("Subject id is required")

    def _record(self, event: SessionEvent, **fields: Any) -> None:
        try:
            self.audit.record(event, fields)
        except Exception as e:
            logger.warning(f"Audit sink failed for {event.value}: {e}")


def build_session_manager(
    settings: Settings,
    *,
    revocation_store: RevocationStore,
    session_store: SessionStore,
    identity_provider: IdentityProvider | None = None,
    audit: AuditSink | None = None,
    clock: Clock = utc_now,
) -> SessionManager:
    """Wire a :class:`SessionManager` from settings and the chosen stores."""
    codec = TokenCodec(
        settings.jwt_access_secret_key or "",
        settings.jwt_refresh_secret_key or "",
        algorithm=settings.jwt_algorithm,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )
    return SessionManager(
        codec,
        revocation_store,
        session_store,
        DeviceTracker(
            clock,
            trust_duration=timedelta(days=settings.device_trust_days),
            retention=timedelta(days=settings.device_retention_days),
        ),
        identity_provider=identity_provider,
        audit=audit,
        clock=clock,
        access_token_ttl=timedelta(minutes=settings.jwt_access_token_expire_minutes),
        refresh_token_ttl=timedelta(days=settings.jwt_refresh_token_expire_days),
        identity_provider_timeout=settings.identity_provider_timeout_seconds,
        cleanup_interval=settings.cleanup_interval_seconds,
        enable_device_tracking=settings.enable_device_tracking,
    )
