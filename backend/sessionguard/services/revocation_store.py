"""Revocation store: blacklisted token hashes and the refresh-token registry.

Raw tokens are never stored; callers pass :func:`hash_token` digests. An entry
past its own ``expires_at`` is treated as absent on lookup (and removed) even
before the next sweep.
"""

import asyncio
import hashlib
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.core.clock import Clock, ensure_utc, utc_now
from sessionguard.models.blacklisted_token import BlacklistedToken
from sessionguard.models.refresh_token import RefreshTokenRecord

from .types import BlacklistEntry, RefreshRegistration

logger = logging.getLogger(__name__)

SUBJECT_BLACKLIST_REASON = "All user tokens blacklisted"


def hash_token(raw_token: str) -> str:
    """One-way SHA-256 hex digest of a raw token string."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class RevocationStore(Protocol):
    async def blacklist(
        self,
        token_hash: str,
        subject_id: str,
        expires_at: datetime,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> BlacklistEntry: ...

    async def is_blacklisted(self, token_hash: str) -> bool: ...

    async def get_entry(self, token_hash: str) -> BlacklistEntry | None: ...

    async def count(self) -> int: ...

    async def sweep_expired(self) -> int: ...

    async def blacklist_all_for_subject(self, subject_id: str, reason: str | None = None) -> int: ...

    async def register_refresh(self, registration: RefreshRegistration) -> None: ...

    async def is_refresh_registered(self, token_id: str) -> bool: ...

    async def consume_refresh(self, token_id: str) -> bool: ...

    async def revoke_refresh_for_subject(self, subject_id: str) -> int: ...

    async def sweep_refresh_registry(self) -> int: ...


class MemoryRevocationStore:
    """In-process revocation store guarded by a single asyncio lock."""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._entries: dict[str, BlacklistEntry] = {}
        self._refresh: dict[str, RefreshRegistration] = {}
        self._lock = asyncio.Lock()

    async def blacklist(
        self,
        token_hash: str,
        subject_id: str,
        expires_at: datetime,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> BlacklistEntry:
        """Insert or replace the entry for ``token_hash``."""
        entry = BlacklistEntry(
            token_hash=token_hash,
            subject_id=subject_id,
            blacklisted_at=self._clock(),
            expires_at=expires_at,
            reason=reason,
            session_id=session_id,
        )
        async with self._lock:
            self._entries[token_hash] = entry
        return entry

    async def is_blacklisted(self, token_hash: str) -> bool:
        return await self.get_entry(token_hash) is not None

    async def get_entry(self, token_hash: str) -> BlacklistEntry | None:
        async with self._lock:
            entry = self._entries.get(token_hash)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[token_hash]
                return None
            return entry

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)

    async def sweep_expired(self) -> int:
        """Remove every expired entry. Returns count removed."""
        now = self._clock()
        async with self._lock:
            expired = [h for h, e in self._entries.items() if e.expires_at <= now]
            for token_hash in expired:
                del self._entries[token_hash]
        if expired:
            logger.debug(f"Swept {len(expired)} expired blacklist entries")
        return len(expired)

    async def blacklist_all_for_subject(self, subject_id: str, reason: str | None = None) -> int:
        """Re-label the subject's tracked entries. Returns count updated."""
        reason = reason or SUBJECT_BLACKLIST_REASON
        now = self._clock()
        updated = 0
        async with self._lock:
            for token_hash, entry in self._entries.items():
                if entry.subject_id == subject_id and entry.expires_at > now:
                    self._entries[token_hash] = replace(entry, reason=reason)
                    updated += 1
        return updated

    async def register_refresh(self, registration: RefreshRegistration) -> None:
        async with self._lock:
            self._refresh[registration.token_id] = registration

    async def is_refresh_registered(self, token_id: str) -> bool:
        async with self._lock:
            registration = self._refresh.get(token_id)
            if registration is None:
                return False
            if registration.expires_at <= self._clock():
                del self._refresh[token_id]
                return False
            return True

    async def consume_refresh(self, token_id: str) -> bool:
        """Remove the registration; only the first caller gets ``True``."""
        async with self._lock:
            registration = self._refresh.pop(token_id, None)
        return registration is not None and registration.expires_at > self._clock()

    async def revoke_refresh_for_subject(self, subject_id: str) -> int:
        async with self._lock:
            doomed = [t for t, r in self._refresh.items() if r.subject_id == subject_id]
            for token_id in doomed:
                del self._refresh[token_id]
        return len(doomed)

    async def sweep_refresh_registry(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [t for t, r in self._refresh.items() if r.expires_at <= now]
            for token_id in expired:
                del self._refresh[token_id]
        return len(expired)


def _entry_from_row(row: BlacklistedToken) -> BlacklistEntry:
    return BlacklistEntry(
        token_hash=row.token_hash,
        subject_id=row.subject_id,
        blacklisted_at=ensure_utc(row.blacklisted_at),
        expires_at=ensure_utc(row.expires_at),
        reason=row.reason,
        session_id=row.session_id,
    )


class SqlRevocationStore:
    """Revocation store backed by the ``token_blacklist`` and ``refresh_tokens`` tables.

    Each operation runs in its own transaction. The process-local lock keeps
    read-then-delete sequences atomic for a single worker; cross-process
    atomicity relies on conditional ``DELETE`` statements.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utc_now):
        self._session_maker = session_maker
        self._clock = clock
        self._lock = asyncio.Lock()

    async def blacklist(
        self,
        token_hash: str,
        subject_id: str,
        expires_at: datetime,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> BlacklistEntry:
        entry = BlacklistEntry(
            token_hash=token_hash,
            subject_id=subject_id,
            blacklisted_at=self._clock(),
            expires_at=ensure_utc(expires_at),
            reason=reason,
            session_id=session_id,
        )
        async with self._lock, self._session_maker() as db:
            await db.merge(
                BlacklistedToken(
                    token_hash=entry.token_hash,
                    subject_id=entry.subject_id,
                    blacklisted_at=entry.blacklisted_at,
                    expires_at=entry.expires_at,
                    reason=entry.reason,
                    session_id=entry.session_id,
                )
            )
            await db.commit()
        return entry

    async def is_blacklisted(self, token_hash: str) -> bool:
        return await self.get_entry(token_hash) is not None

    async def get_entry(self, token_hash: str) -> BlacklistEntry | None:
        async with self._lock, self._session_maker() as db:
            row = await db.get(BlacklistedToken, token_hash)
            if row is None:
                return None
            entry = _entry_from_row(row)
            if entry.expires_at <= self._clock():
                await db.delete(row)
                await db.commit()
                return None
            return entry

    async def count(self) -> int:
        async with self._session_maker() as db:
            result = await db.execute(select(func.count()).select_from(BlacklistedToken))
            return result.scalar() or 0

    async def sweep_expired(self) -> int:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                delete(BlacklistedToken)
                .execution_options(synchronize_session=False)
                .where(BlacklistedToken.expires_at <= self._clock())
            )
            await db.commit()
            return result.rowcount

    async def blacklist_all_for_subject(self, subject_id: str, reason: str | None = None) -> int:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                update(BlacklistedToken)
                .execution_options(synchronize_session=False)
                .where(
                    BlacklistedToken.subject_id == subject_id,
                    BlacklistedToken.expires_at > self._clock(),
                )
                .values(reason=reason or SUBJECT_BLACKLIST_REASON)
            )
            await db.commit()
            return result.rowcount

    async def register_refresh(self, registration: RefreshRegistration) -> None:
        async with self._lock, self._session_maker() as db:
            await db.merge(
                RefreshTokenRecord(
                    token_id=registration.token_id,
                    subject_id=registration.subject_id,
                    session_id=registration.session_id,
                    issued_at=registration.issued_at,
                    expires_at=registration.expires_at,
                )
            )
            await db.commit()

    async def is_refresh_registered(self, token_id: str) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                select(RefreshTokenRecord.token_id).where(
                    RefreshTokenRecord.token_id == token_id,
                    RefreshTokenRecord.expires_at > self._clock(),
                )
            )
            return result.scalar_one_or_none() is not None

    async def consume_refresh(self, token_id: str) -> bool:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                delete(RefreshTokenRecord)
                .execution_options(synchronize_session=False)
                .where(
                    RefreshTokenRecord.token_id == token_id,
                    RefreshTokenRecord.expires_at > self._clock(),
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def revoke_refresh_for_subject(self, subject_id: str) -> int:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                delete(RefreshTokenRecord)
                .execution_options(synchronize_session=False)
                .where(RefreshTokenRecord.subject_id == subject_id)
            )
            await db.commit()
            return result.rowcount

    async def sweep_refresh_registry(self) -> int:
        async with self._lock, self._session_maker() as db:
            result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                delete(RefreshTokenRecord)
                .execution_options(synchronize_session=False)
                .where(RefreshTokenRecord.expires_at <= self._clock())
            )
            await db.commit()
            return result.rowcount
