"""
Utility modules
"""

from .database import get_db_context, get_session_maker, init_db, close_db
from .cache import CacheService, MemoryCache, build_cache

__all__ = [
    "get_db_context",
    "get_session_maker",
    "init_db",
    "close_db",
    "CacheService",
    "MemoryCache",
    "build_cache",
]
