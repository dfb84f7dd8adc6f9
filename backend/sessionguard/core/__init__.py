# SessionGuard Core Module
from .clock import Clock, ensure_utc, utc_now
from .config import Settings, get_settings
from .database import Base, check_db_connection, create_engine, create_session_maker, init_models
from .logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "get_logger",
    "Clock",
    "utc_now",
    "ensure_utc",
    "Base",
    "create_engine",
    "create_session_maker",
    "init_models",
    "check_db_connection",
]
