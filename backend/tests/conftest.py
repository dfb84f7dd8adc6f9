"""Pytest configuration and fixtures for SessionGuard tests.

Time-dependent components all take a clock; tests drive a FakeClock instead
of sleeping. Store fixtures come in an in-memory flavour and a SQLite
(aiosqlite, in-memory database) flavour.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before importing app modules
os.environ.setdefault("JWT_ACCESS_SECRET_KEY", "access-" + "a" * 48)
os.environ.setdefault("JWT_REFRESH_SECRET_KEY", "refresh-" + "r" * 48)

from sessionguard.core.database import create_engine, create_session_maker, init_models  # noqa: E402
from sessionguard.services.audit import AuditLogger  # noqa: E402
from sessionguard.services.device_tracker import DeviceTracker  # noqa: E402
from sessionguard.services.errors import (  # noqa: E402
    IdentityProviderError,
    InvalidTokenError,
    TokenExpiredError,
)
from sessionguard.services.revocation_store import (  # noqa: E402
    MemoryRevocationStore,
    SqlRevocationStore,
)
from sessionguard.services.session_manager import SessionManager  # noqa: E402
from sessionguard.services.session_store import MemorySessionStore, SqlSessionStore  # noqa: E402
from sessionguard.services.token_codec import TokenCodec  # noqa: E402
from sessionguard.services.types import (  # noqa: E402
    CreateSessionData,
    CustomClaims,
    DeviceInfo,
    IdentityClaims,
    LoginMethod,
)

ACCESS_SECRET = "test-access-secret-" + "x" * 32
REFRESH_SECRET = "test-refresh-secret-" + "y" * 32
START_TIME = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeIdentityProvider:
    """In-memory identity provider with switchable failures."""

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self.tokens: dict[str, IdentityClaims] = {}
        self.current_claims: dict[str, CustomClaims] = {}
        self.revoked_subjects: list[str] = []
        self.lookup_calls: list[str] = []
        self.fail_lookup = False
        self.fail_revoke = False
        self.delay = 0.0

    def issue(
        self,
        subject_id: str,
        role: str = "STUDENT",
        *,
        ttl: timedelta = timedelta(hours=1),
        email: str | None = None,
    ) -> str:
        raw = f"idp-token-{subject_id}-{len(self.tokens)}"
        now = self._clock()
        self.tokens[raw] = IdentityClaims(
            subject_id=subject_id,
            issued_at=now,
            expires_at=now + ttl,
            custom_claims=CustomClaims(role=role),
            email=email,
            email_verified=email is not None,
        )
        return raw

    async def verify_identity_token(self, raw_token: str) -> IdentityClaims:
        if self.delay:
            await asyncio.sleep(self.delay)
        claims = self.tokens.get(raw_token)
        if claims is None:
            raise InvalidTokenError("Unknown identity token")
        if claims.expires_at <= self._clock():
            raise TokenExpiredError("Identity token has expired")
        return claims

    async def revoke_all_sessions_for_subject(self, subject_id: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_revoke:
            raise IdentityProviderError("Identity provider unavailable")
        self.revoked_subjects.append(subject_id)

    async def lookup_current_claims(self, subject_id: str) -> CustomClaims:
        self.lookup_calls.append(subject_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_lookup:
            raise IdentityProviderError("Identity provider unavailable")
        return self.current_claims.get(subject_id, CustomClaims(role="STUDENT"))


# --- Basic fixtures ---


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> TokenCodec:
    return TokenCodec(ACCESS_SECRET, REFRESH_SECRET, clock=clock)


@pytest.fixture
def identity_provider(clock: FakeClock) -> FakeIdentityProvider:
    return FakeIdentityProvider(clock)


@pytest.fixture
def audit() -> AuditLogger:
    return AuditLogger()


@pytest.fixture
def device_tracker(clock: FakeClock) -> DeviceTracker:
    return DeviceTracker(clock)


@pytest.fixture
def make_session_data() -> Callable[..., CreateSessionData]:
    """Factory for CreateSessionData with sensible defaults."""

    def _make(
        subject_id: str = "u1",
        fingerprint: str = "fp-desktop",
        *,
        role: str = "STUDENT",
        ip_address: str = "203.0.113.7",
        timezone: str = "Europe/Berlin",
        is_mobile: bool = False,
        login_method: LoginMethod = LoginMethod.EMAIL_PASSWORD,
        email: str | None = None,
    ) -> CreateSessionData:
        return CreateSessionData(
            subject_id=subject_id,
            device_info=DeviceInfo(
                fingerprint=fingerprint,
                platform="MacIntel",
                browser="Firefox",
                browser_version="130.0",
                os="macOS",
                os_version="14.5",
                screen_resolution="2560x1440",
                timezone=timezone,
                language="en-US",
                is_mobile=is_mobile,
                is_desktop=not is_mobile,
            ),
            ip_address=ip_address,
            user_agent="Mozilla/5.0 (test)",
            claims=CustomClaims(role=role, permissions=("course:read",)),
            login_method=login_method,
            email=email,
            email_verified=True if email else None,
        )

    return _make


# --- Store fixtures ---


@asynccontextmanager
async def sqlite_session_maker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    try:
        yield create_session_maker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def sql_session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    async with sqlite_session_maker() as session_maker:
        yield session_maker


@pytest_asyncio.fixture(params=["memory", "sql"])
async def revocation_store(request, clock: FakeClock):
    """Both revocation store backings; each test runs once against each."""
    if request.param == "memory":
        yield MemoryRevocationStore(clock)
        return
    async with sqlite_session_maker() as session_maker:
        yield SqlRevocationStore(session_maker, clock)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def session_store(request, clock: FakeClock):
    """Both session store backings with a cap of two sessions per subject."""
    if request.param == "memory":
        yield MemorySessionStore(clock, max_sessions_per_subject=2)
        return
    async with sqlite_session_maker() as session_maker:
        yield SqlSessionStore(session_maker, clock, max_sessions_per_subject=2)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def single_session_store(request, clock: FakeClock):
    """Both session store backings allowing one session per subject."""
    if request.param == "memory":
        yield MemorySessionStore(clock, max_sessions_per_subject=1)
        return
    async with sqlite_session_maker() as session_maker:
        yield SqlSessionStore(session_maker, clock, max_sessions_per_subject=1)


@pytest_asyncio.fixture
async def manager(
    codec: TokenCodec,
    clock: FakeClock,
    identity_provider: FakeIdentityProvider,
    audit: AuditLogger,
    device_tracker: DeviceTracker,
) -> AsyncGenerator[SessionManager, None]:
    """Manager over in-memory stores with a fast provider timeout."""
    manager = SessionManager(
        codec,
        MemoryRevocationStore(clock),
        MemorySessionStore(clock, max_sessions_per_subject=5),
        device_tracker,
        identity_provider=identity_provider,
        audit=audit,
        clock=clock,
        identity_provider_timeout=0.2,
        cleanup_interval=3600,
    )
    yield manager
    await manager.stop()
