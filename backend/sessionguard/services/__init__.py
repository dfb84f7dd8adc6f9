# SessionGuard Services
from sessionguard.services.audit import AuditLogger, AuditSink
from sessionguard.services.device_tracker import DeviceTracker
from sessionguard.services.identity_provider import HttpIdentityProvider, IdentityProvider
from sessionguard.services.revocation_store import (
    MemoryRevocationStore,
    RevocationStore,
    SqlRevocationStore,
    hash_token,
)
from sessionguard.services.session_manager import SessionManager, build_session_manager
from sessionguard.services.session_store import MemorySessionStore, SessionStore, SqlSessionStore
from sessionguard.services.token_codec import TokenCodec

__all__ = [
    "AuditLogger",
    "AuditSink",
    "DeviceTracker",
    "HttpIdentityProvider",
    "IdentityProvider",
    "MemoryRevocationStore",
    "MemorySessionStore",
    "RevocationStore",
    "SessionManager",
    "SessionStore",
    "SqlRevocationStore",
    "SqlSessionStore",
    "TokenCodec",
    "build_session_manager",
    "hash_token",
]
