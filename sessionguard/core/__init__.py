# SessionGuard Core Module
from .config import AuthPolicy, get_settings, settings
from .database import Base, async_session_maker, check_db_connection, engine, get_db
from .logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_settings",
    "AuthPolicy",
    "setup_logging",
    "get_logger",
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "check_db_connection",
]
