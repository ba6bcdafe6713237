"""Redis storage layer for distributed instance locks."""

from workflow_runtime.storage.redis.connection import RedisConnection
from workflow_runtime.storage.redis.lock import RedisLockProvider

__all__ = [
    "RedisConnection",
    "RedisLockProvider",
]
