"""
Per-contact mutual exclusion.

Every read-modify-write of a contact record runs under `lock.hold(address)`
so concurrent events for the same contact are serialized while different
contacts proceed in parallel.

Backends:
  - KeyedAsyncLock  — asyncio locks, single process
  - RedisKeyedLock  — SET NX PX with a token, compare-and-delete release;
                      for multi-worker deployments sharing one Redis
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from config.settings import LockConfig

logger = structlog.get_logger()


class LockUnavailableError(Exception):
    """Could not acquire the lock for a key before the spin timeout."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Could not acquire lock for {key}")


class KeyedAsyncLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisKeyedLock:
    """
    Distributed single-writer lock per key.

    Acquire: SET lock:{namespace}:{key} token NX PX ttl, with a short spin.
    Release: delete only if we still own the token.
    """

    def __init__(self, redis_url: str, ttl_ms: int = 10000,
                 spin_attempts: int = 50, spin_delay: float = 0.1, namespace: str = "contact"):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(redis_url, decode_responses=True)
        self._ttl_ms = ttl_ms
        self._spin_attempts = spin_attempts
        self._spin_delay = spin_delay
        self._namespace = namespace

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock_key = f"lock:{self._namespace}:{key}"
        token = uuid.uuid4().hex
        acquired = await self._redis.set(lock_key, token, px=self._ttl_ms, nx=True)
        if not acquired:
            for _ in range(self._spin_attempts):
                await asyncio.sleep(self._spin_delay)
                if await self._redis.set(lock_key, token, px=self._ttl_ms, nx=True):
                    acquired = True
                    break
        if not acquired:
            logger.warning("contact_lock_unavailable", key=key)
            raise LockUnavailableError(key)

        try:
            yield
        finally:
            released = await self._redis.eval(_RELEASE_SCRIPT, 1, lock_key, token)
            if not released:
                logger.warning("contact_lock_expired_before_release", key=key, ttl_ms=self._ttl_ms)

    async def close(self):
        await self._redis.aclose()


_instance: Optional[KeyedAsyncLock | RedisKeyedLock] = None


def create_contact_lock(config: LockConfig = None) -> KeyedAsyncLock | RedisKeyedLock:
    """Create the configured per-contact lock (singleton)."""
    global _instance
    if _instance is not None:
        return _instance
    config = config or LockConfig()
    if config.backend == "redis":
        _instance = RedisKeyedLock(config.redis_url, ttl_ms=config.ttl_ms)
    else:
        _instance = KeyedAsyncLock()
    logger.info("contact_lock_created", backend=config.backend)
    return _instance


def reset_contact_lock() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
