"""Database package: shared engine, session factory, and Redis client."""

from submission_monitor.db.base import Base, close_db, get_session_factory, init_db
from submission_monitor.db.redis import close_redis, get_redis, init_redis, redis_key

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "redis_key",
]
