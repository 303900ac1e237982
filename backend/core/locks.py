"""Dispatch locks on a shared key-value store.

A lock is a key created with an atomic ``SET key <token> NX EX ttl``. The
token identifies the dispatch run that claimed it. The key expires on its
own after the TTL and may be released early, but only by a holder that
presents the same token: a worker that outlived its TTL must not delete a
lock another run has claimed since.
"""

from __future__ import annotations

from typing import Protocol

import redis

from backend.core.logging import get_logger

logger = get_logger(__name__)

# Delete KEYS[1] only while it still holds ARGV[1]
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockStoreError(Exception):
    """The lock store could not be reached or rejected the command."""


class LockManager(Protocol):
    def try_acquire(self, key: str, ttl_seconds: int, token: str) -> bool: ...

    def exists(self, key: str) -> bool: ...

    def release(self, key: str, token: str) -> bool: ...


class RedisLockManager:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client
        self._release_script = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisLockManager":
        if url is None:
            from backend.core.config import settings
            url = settings.REDIS_URL
        return cls(redis.Redis.from_url(url))

    def try_acquire(self, key: str, ttl_seconds: int, token: str) -> bool:
        """Create ``key`` owned by ``token`` if absent; False means another run holds it."""
        try:
            return bool(self.client.set(key, token, nx=True, ex=ttl_seconds))
        except redis.RedisError as e:
            raise LockStoreError(str(e)) from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            raise LockStoreError(str(e)) from e

    def release(self, key: str, token: str) -> bool:
        """Delete ``key`` if ``token`` still owns it; returns whether it was deleted."""
        try:
            released = bool(self._release_script(keys=[key], args=[token]))
        except redis.RedisError as e:
            logger.warning("lock_release_failed", extra={"key": key, "error": str(e)})
            return False
        if not released:
            logger.info("lock_release_skipped_not_owner", extra={"key": key})
        return released
