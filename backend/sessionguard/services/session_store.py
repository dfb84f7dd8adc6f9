"""Session store: live sessions per subject with a per-subject cap.

Stores hand out copies; the live record is only mutated under the store's
lock. Once a session is terminated or expired it never becomes active again,
so a ``touch`` that loses the race against ``terminate`` is a no-op.
"""

import asyncio
import logging
import secrets
from collections import deque
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import case, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.core.clock import Clock, ensure_utc, utc_now
from sessionguard.models.user_session import UserSessionRecord

from .types import CreateSessionData, DeviceInfo, LoginMethod, Session, SessionAction, SessionActivity

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=7)
DEFAULT_MAX_SESSIONS = 5

EXPIRED_REASON = "Session expired"
EVICTED_REASON = "Session limit exceeded"
TERMINATED_REASON = "Session terminated"


def generate_session_id() -> str:
    """64 hex chars of randomness."""
    return secrets.token_hex(32)


class SessionStore(Protocol):
    async def create(self, data: CreateSessionData) -> Session: ...

    async def get(self, session_id: str) -> Session | None: ...

    async def list_by_subject(self, subject_id: str) -> list[Session]: ...

    async def touch(self, session_id: str, activity: SessionActivity) -> bool: ...

    async def terminate(self, session_id: str, reason: str | None = None) -> bool: ...

    async def terminate_all_for_subject(self, subject_id: str, reason: str | None = None) -> int: ...

    async def count_active(self) -> int: ...

    async def list_by_created_range(self, start: datetime, end: datetime) -> list[Session]: ...

    async def sweep_expired(self) -> int: ...

    async def snapshot(self, subject_id: str | None = None) -> list[Session]: ...


class MemorySessionStore:
    """In-process session table indexed by session id and subject.

    Ended sessions (terminated, evicted or expired) leave the live index and
    are kept in a bounded history for analytics.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        *,
        max_sessions_per_subject: int = DEFAULT_MAX_SESSIONS,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        ended_retention: int = 1000,
    ):
        if max_sessions_per_subject < 1:
            raise ValueError("max_sessions_per_subject must be at least 1")
        self._clock = clock
        self.max_sessions_per_subject = max_sessions_per_subject
        self.session_ttl = session_ttl
        self._sessions: dict[str, Session] = {}
        self._by_subject: dict[str, set[str]] = {}
        self._ended: deque[Session] = deque(maxlen=ended_retention)
        self._lock = asyncio.Lock()

    async def create(self, data: CreateSessionData) -> Session:
        """Open a session, evicting the subject's least recently active ones over the cap."""
        async with self._lock:
            now = self._clock()
            live = self._live_for_subject_locked(data.subject_id, now)
            while len(live) >= self.max_sessions_per_subject:
                oldest = min(live, key=lambda s: (s.last_activity_at, s.created_at))
                logger.info(
                    f"Evicting session {oldest.session_id[:8]} for subject {data.subject_id}: "
                    f"limit of {self.max_sessions_per_subject} reached"
                )
                self._end_locked(oldest, now, EVICTED_REASON, terminated=True)
                live.remove(oldest)

            session = Session(
                session_id=generate_session_id(),
                subject_id=data.subject_id,
                device_fingerprint=data.device_info.fingerprint,
                device_info=data.device_info,
                ip_address=data.ip_address,
                user_agent=data.user_agent,
                login_method=data.login_method,
                created_at=now,
                last_activity_at=now,
                expires_at=now + self.session_ttl,
            )
            self._sessions[session.session_id] = session
            self._by_subject.setdefault(session.subject_id, set()).add(session.session_id)
            return replace(session)

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            now = self._clock()
            if session.expires_at <= now:
                self._end_locked(session, now, EXPIRED_REASON, terminated=False)
                return None
            return replace(session)

    async def list_by_subject(self, subject_id: str) -> list[Session]:
        async with self._lock:
            live = self._live_for_subject_locked(subject_id, self._clock())
            return sorted((replace(s) for s in live), key=lambda s: s.created_at)

    async def touch(self, session_id: str, activity: SessionActivity) -> bool:
        """Record activity. Returns ``False`` (and changes nothing) for ended sessions."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            now = self._clock()
            if session.expires_at <= now:
                self._end_locked(session, now, EXPIRED_REASON, terminated=False)
                return False
            at = ensure_utc(activity.timestamp) if activity.timestamp else now
            # Late pings never move activity backwards
            session.last_activity_at = max(session.last_activity_at, at)
            session.activity_count += 1
            if activity.action is SessionAction.SUSPICIOUS_ACTIVITY:
                session.suspicious_activity_count += 1
            return True

    async def terminate(self, session_id: str, reason: str | None = None) -> bool:
        """End a session. Returns ``False`` if it was already gone."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            self._end_locked(session, self._clock(), reason or TERMINATED_REASON, terminated=True)
            return True

    async def terminate_all_for_subject(self, subject_id: str, reason: str | None = None) -> int:
        async with self._lock:
            now = self._clock()
            live = self._live_for_subject_locked(subject_id, now)
            for session in live:
                self._end_locked(session, now, reason or TERMINATED_REASON, terminated=True)
            return len(live)

    async def count_active(self) -> int:
        now = self._clock()
        async with self._lock:
            return sum(1 for s in self._sessions.values() if s.expires_at > now)

    async def list_by_created_range(self, start: datetime, end: datetime) -> list[Session]:
        """Sessions (live or retained) created within ``[start, end]``."""
        sessions = await self.snapshot()
        return [s for s in sessions if start <= s.created_at <= end]

    async def sweep_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [s for s in self._sessions.values() if s.expires_at <= now]
            for session in expired:
                self._end_locked(session, now, EXPIRED_REASON, terminated=False)
        if expired:
            logger.debug(f"Expired {len(expired)} sessions")
        return len(expired)

    async def snapshot(self, subject_id: str | None = None) -> list[Session]:
        """Copies of live and retained ended sessions, without evicting anything."""
        async with self._lock:
            sessions = [*self._sessions.values(), *self._ended]
            return [
                replace(s) for s in sessions if subject_id is None or s.subject_id == subject_id
            ]

    def _live_for_subject_locked(self, subject_id: str, now: datetime) -> list[Session]:
        live = []
        for session_id in list(self._by_subject.get(subject_id, ())):
            session = self._sessions[session_id]
            if session.expires_at <= now:
                self._end_locked(session, now, EXPIRED_REASON, terminated=False)
            else:
                live.append(session)
        return live

    def _end_locked(self, session: Session, now: datetime, reason: str, *, terminated: bool) -> None:
        session.is_active = False
        session.termination_reason = reason
        if terminated:
            session.terminated_at = now
        self._sessions.pop(session.session_id, None)
        ids = self._by_subject.get(session.subject_id)
        if ids is not None:
            ids.discard(session.session_id)
            if not ids:
                del self._by_subject[session.subject_id]
        self._ended.append(session)


def _session_from_row(row: UserSessionRecord) -> Session:
    return Session(
        session_id=row.session_id,
        subject_id=row.subject_id,
        device_fingerprint=row.device_fingerprint,
        device_info=DeviceInfo(**row.device_info),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        login_method=LoginMethod(row.login_method),
        created_at=ensure_utc(row.created_at),
        last_activity_at=ensure_utc(row.last_activity_at),
        expires_at=ensure_utc(row.expires_at),
        is_active=row.is_active,
        terminated_at=ensure_utc(row.terminated_at) if row.terminated_at else None,
        termination_reason=row.termination_reason,
        activity_count=row.activity_count,
        suspicious_activity_count=row.suspicious_activity_count,
    )


class SqlSessionStore:
    """Session store backed by the ``user_sessions`` table.

    Ended sessions keep their rows (``is_active = false``) so analytics can
    report on them.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
        *,
        max_sessions_per_subject: int = DEFAULT_MAX_SESSIONS,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
    ):
        if max_sessions_per_subject < 1:
            raise ValueError("max_sessions_per_subject must be at least 1")
        self._session_maker = session_maker
        self._clock = clock
        self.max_sessions_per_subject = max_sessions_per_subject
        self.session_ttl = session_ttl
        self._lock = asyncio.Lock()

    async def create(self, data: CreateSessionData) -> Session:
        async with self._lock, self._session_maker() as db:
            now = self._clock()
            await self._expire_stale(db, now, UserSessionRecord.subject_id == data.subject_id)
            result = await db.execute(
                select(UserSessionRecord)
                .where(
                    UserSessionRecord.subject_id == data.subject_id,
                    UserSessionRecord.is_active.is_(True),
                )
                .order_by(UserSessionRecord.last_activity_at, UserSessionRecord.created_at)
            )
            live = list(result.scalars().all())
            excess = len(live) - self.max_sessions_per_subject + 1
            for row in live[: max(excess, 0)]:
                logger.info(
                    f"Evicting session {row.session_id[:8]} for subject {data.subject_id}: "
                    f"limit of {self.max_sessions_per_subject} reached"
                )
                row.is_active = False
                row.terminated_at = now
                row.termination_reason = EVICTED_REASON

            row = UserSessionRecord(
                session_id=generate_session_id(),
                subject_id=data.subject_id,
                device_fingerprint=data.device_info.fingerprint,
                device_info=asdict(data.device_info),
                ip_address=data.ip_address,
                user_agent=data.user_agent,
                login_method=data.login_method.value,
                created_at=now,
                last_activity_at=now,
                expires_at=now + self.session_ttl,
                is_active=True,
                activity_count=0,
                suspicious_activity_count=0,
            )
            db.add(row)
            await db.commit()
            return _session_from_row(row)

    async def get(self, session_id: str) -> Session | None:
        async with self._lock, self._session_maker() as db:
            row = await db.get(UserSessionRecord, session_id)
            if row is None or not row.is_active:
                return None
            if ensure_utc(row.expires_at) <= self._clock():
                row.is_active = False
                row.termination_reason = EXPIRED_REASON
                await db.commit()
                return None
            return _session_from_row(row)

    async def list_by_subject(self, subject_id: str) -> list[Session]:
        async with self._lock, self._session_maker() as db:
            await self._expire_stale(db, self._clock(), UserSessionRecord.subject_id == subject_id)
            await db.commit()
            result = await db.execute(
                select(UserSessionRecord)
                .where(
                    UserSessionRecord.subject_id == subject_id,
                    UserSessionRecord.is_active.is_(True),
                )
                .order_by(UserSessionRecord.created_at)
            )
            return [_session_from_row(row) for row in result.scalars().all()]

    async def touch(self, session_id: str, activity: SessionActivity) -> bool:
        now = self._clock()
        at = ensure_utc(activity.timestamp) if activity.timestamp else now
        values: dict[str, Any] = {
            "last_activity_at": case(
                (UserSessionRecord.last_activity_at < at, at),
                else_=UserSessionRecord.last_activity_at,
            ),
            "activity_count": UserSessionRecord.activity_count + 1,
        }
        if activity.action is SessionAction.SUSPICIOUS_ACTIVITY:
            values["suspicious_activity_count"] = UserSessionRecord.suspicious_activity_count + 1
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                update(UserSessionRecord)
                .execution_options(synchronize_session=False)
                .where(
                    UserSessionRecord.session_id == session_id,
                    UserSessionRecord.is_active.is_(True),
                    UserSessionRecord.expires_at > now,
                )
                .values(**values)
            )
            await db.commit()
            return result.rowcount == 1

    async def terminate(self, session_id: str, reason: str | None = None) -> bool:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                update(UserSessionRecord)
                .execution_options(synchronize_session=False)
                .where(
                    UserSessionRecord.session_id == session_id,
                    UserSessionRecord.is_active.is_(True),
                )
                .values(
                    is_active=False,
                    terminated_at=self._clock(),
                    termination_reason=reason or TERMINATED_REASON,
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def terminate_all_for_subject(self, subject_id: str, reason: str | None = None) -> int:
        async with self._lock, self._session_maker() as db:
            now = self._clock()
            await self._expire_stale(db, now, UserSessionRecord.subject_id == subject_id)
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                update(UserSessionRecord)
                .execution_options(synchronize_session=False)
                .where(
                    UserSessionRecord.subject_id == subject_id,
                    UserSessionRecord.is_active.is_(True),
                )
                .values(
                    is_active=False,
                    terminated_at=now,
                    termination_reason=reason or TERMINATED_REASON,
                )
            )
            await db.commit()
            return result.rowcount

    async def count_active(self) -> int:
        async with self._session_maker() as db:
            result = await db.execute(
                select(func.count())
                .select_from(UserSessionRecord)
                .where(
                    UserSessionRecord.is_active.is_(True),
                    UserSessionRecord.expires_at > self._clock(),
                )
            )
            return result.scalar() or 0

    async def list_by_created_range(self, start: datetime, end: datetime) -> list[Session]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(UserSessionRecord)
                .where(UserSessionRecord.created_at >= start, UserSessionRecord.created_at <= end)
                .order_by(UserSessionRecord.created_at)
            )
            return [_session_from_row(row) for row in result.scalars().all()]

    async def sweep_expired(self) -> int:
        async with self._lock, self._session_maker() as db:
            count = await self._expire_stale(db, self._clock())
            await db.commit()
            return count

    async def snapshot(self, subject_id: str | None = None) -> list[Session]:
        query = select(UserSessionRecord)
        if subject_id is not None:
            query = query.where(UserSessionRecord.subject_id == subject_id)
        async with self._session_maker() as db:
            result = await db.execute(query)
            return [_session_from_row(row) for row in result.scalars().all()]

    @staticmethod
    async def _expire_stale(db: AsyncSession, now: datetime, *criteria: Any) -> int:
        result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
            update(UserSessionRecord)
            .execution_options(synchronize_session=False)
            .where(
                UserSessionRecord.is_active.is_(True),
                UserSessionRecord.expires_at <= now,
                *criteria,
            )
            .values(is_active=False, termination_reason=EXPIRED_REASON)
        )
        return result.rowcount
