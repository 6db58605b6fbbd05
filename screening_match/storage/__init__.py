"""Storage module for screening match database operations."""
from .database import get_db, init_db, drop_db, get_engine, get_session_factory, AsyncSessionLocal
from .repository import MatchingRepository

__all__ = [
    "get_db",
    "init_db",
    "drop_db",
    "get_engine",
    "get_session_factory",
    "AsyncSessionLocal",
    "MatchingRepository",
]
