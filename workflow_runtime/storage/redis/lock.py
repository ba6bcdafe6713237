"""
Instance advisory locks held in Redis.

Acquire and release run as Lua scripts so the holder check and the write
happen atomically, whichever engine process gets there first.
"""

import logging
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis

from workflow_runtime.storage.base import LockProvider

logger = logging.getLogger(__name__)


# Takes the lock when free, extends it when already held by the caller.
# Returns 1 when ARGV[1] holds the lock afterwards, 0 otherwise.
ACQUIRE_LOCK_SCRIPT = """
local key = KEYS[1]
local holder = ARGV[1]
local ttl_ms = tonumber(ARGV[2])

local current = redis.call("GET", key)
if not current then
    redis.call("SET", key, holder, "PX", ttl_ms)
    return 1
end

if current == holder then
    redis.call("PEXPIRE", key, ttl_ms)
    return 1
end

return 0
"""

# Deletes the lock only when ARGV[1] still holds it.
RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisLockProvider(LockProvider):
    """
    Advisory lock per instance, keyed ``{prefix}{instance_id}``.

    Expiry is enforced by Redis itself, so a crashed holder's lock lapses
    after the lock duration.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "wf:lock:"):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._acquire_script: Optional[Any] = None
        self._release_script: Optional[Any] = None

    async def init(self) -> None:
        """Register Lua scripts."""
        self._acquire_script = self.redis.register_script(ACQUIRE_LOCK_SCRIPT)
        self._release_script = self.redis.register_script(RELEASE_LOCK_SCRIPT)

    def _key(self, instance_id: UUID) -> str:
        return f"{self.key_prefix}{instance_id}"

    async def try_acquire_lock(
        self,
        instance_id: UUID,
        holder_id: str,
        duration: timedelta,
    ) -> bool:
        if self._acquire_script is None:
            await self.init()

        ttl_ms = max(1, int(duration.total_seconds() * 1000))
        result = await self._acquire_script(keys=[self._key(instance_id)], args=[holder_id, ttl_ms])

        if int(result) == 1:
            return True

        logger.debug(f"Lock for instance {instance_id} is held by another holder")
        return False

    async def release_lock(self, instance_id: UUID, holder_id: str) -> None:
        if self._release_script is None:
            await self.init()

        released = await self._release_script(keys=[self._key(instance_id)], args=[holder_id])
        if not int(released):
            logger.debug(f"Lock for instance {instance_id} was not held by {holder_id}")

    async def get_holder(self, instance_id: UUID) -> Optional[str]:
        """Current holder of an instance lock, if any."""
        return await self.redis.get(self._key(instance_id))
