"""Keyed TTL stores backing per-user security state.

``LocalKeyedStore`` is a process-local map for single-instance deployments
and tests. ``RedisKeyedStore`` shares state across instances; rate limits and
CSRF tokens are only correct across processes when this one is used.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, AsyncContextManager, Callable, Dict, Optional, Protocol, Tuple

from assessor.common.locks import KeyedLocks
from assessor.core.config import get_settings

logger = logging.getLogger("common.cache")

_DELETE_IF_EQUAL_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class KeyedStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_if_equal(self, key: str, expected: Any) -> bool: ...

    async def expire(self, key: str, ttl: int) -> None: ...

    def hold(self, key: str) -> AsyncContextManager[None]: ...


class LocalKeyedStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._key_locks = KeyedLocks()

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        item = self._store.get(key)
        if item is None:
            return None
        _, exp = item
        if exp is not None and self._clock() >= exp:
            self._store.pop(key, None)
            return None
        return item

    async def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            exp = self._clock() + max(1, int(ttl)) if ttl is not None else None
            self._store[key] = (value, exp)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    async def delete_if_equal(self, key: str, expected: Any) -> bool:
        """Atomically remove ``key`` when it still holds ``expected``."""
        with self._lock:
            item = self._live(key)
            if item is None or item[0] != expected:
                return False
            self._store.pop(key, None)
            return True

    async def expire(self, key: str, ttl: int) -> None:
        with self._lock:
            item = self._live(key)
            if item is None:
                return
            self._store[key] = (item[0], self._clock() + max(1, int(ttl)))

    def hold(self, key: str) -> AsyncContextManager[None]:
        """Serialise read-modify-write sequences on ``key`` within this process."""
        return self._key_locks.hold(key)

    def clear(self, prefix: Optional[str] = None) -> None:
        with self._lock:
            if prefix is None:
                self._store.clear()
                return
            for k in [k for k in self._store if k.startswith(prefix)]:
                self._store.pop(k, None)


class RedisKeyedStore:
    """JSON-encoded values in Redis with native TTLs."""

    def __init__(self, url: str, *, namespace: str = "assessor", lock_timeout: float = 10.0) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url, encoding="utf-8", decode_responses=True)
        self._namespace = namespace
        self._lock_timeout = lock_timeout
        self._delete_if_equal = self._redis.register_script(_DELETE_IF_EQUAL_LUA)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl is not None:
            await self._redis.set(self._key(key), payload, ex=max(1, int(ttl)))
        else:
            await self._redis.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def delete_if_equal(self, key: str, expected: Any) -> bool:
        payload = json.dumps(expected, default=str)
        removed = await self._delete_if_equal(keys=[self._key(key)], args=[payload])
        return bool(removed)

    async def expire(self, key: str, ttl: int) -> None:
        await self._redis.expire(self._key(key), max(1, int(ttl)))

    def hold(self, key: str) -> AsyncContextManager[None]:
        """Cluster-wide lock on ``key``; raises ``redis.exceptions.LockError`` on timeout."""
        return self._redis.lock(
            self._key(f"lock:{key}"),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


_default_store: Optional[KeyedStore] = None


def get_keyed_store() -> KeyedStore:
    global _default_store
    if _default_store is None:
        settings = get_settings()
        if settings.redis_url:
            logger.info("Keyed store backed by Redis")
            _default_store = RedisKeyedStore(settings.redis_url)
        else:
            logger.warning(
                "REDIS_URL not set; using in-memory keyed store. Rate limits and CSRF tokens are per-process."
            )
            _default_store = LocalKeyedStore()
    return _default_store


__all__ = ["KeyedStore", "LocalKeyedStore", "RedisKeyedStore", "get_keyed_store"]
