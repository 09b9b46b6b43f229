import redis.asyncio as aioredis

from kfsync.core.config import settings

# Shared async Redis client (created lazily, reused across requests)
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


# ─── Sync run lock ─────────────────────────────────────────────────────────────

_SYNC_LOCK_KEY = "kfsync:sync_lock"

# Release only if the lock still holds our token (it may have expired and
# been taken by another process in the meantime).
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SyncLock:
    """Cross-process guard so the API and the Celery beat never sync at once."""

    def __init__(self, client: aioredis.Redis | None = None, ttl_seconds: int | None = None,
                 key: str = _SYNC_LOCK_KEY):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.sync_lock_ttl_seconds
        self.key = key

    @property
    def client(self) -> aioredis.Redis:
        return self._client if self._client is not None else get_redis()

    async def acquire(self, token: str) -> bool:
        """SET NX EX; True when this caller now holds the lock."""
        return bool(await self.client.set(self.key, token, nx=True, ex=self.ttl_seconds))

    async def release(self, token: str) -> bool:
        return bool(await self.client.eval(_RELEASE_SCRIPT, 1, self.key, token))

    async def holder(self) -> str | None:
        return await self.client.get(self.key)
