"""Key-value state store: JSON blobs under opaque string keys.

Two implementations share one interface:
- RedisKVStore: production store (redis.asyncio). ``update()`` is an
  optimistic read-modify-write using WATCH/MULTI, retried on conflict.
- InMemoryKVStore: process-local store for tests and local runs.

Every Redis failure is raised as StoreError so handlers can classify it
as retryable without knowing about the backend.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)

# update() callback: current value (or None) -> value to write (or None to skip)
Updater = Callable[[dict[str, Any] | None], dict[str, Any] | None]

_DEFAULT_UPDATE_ATTEMPTS = 5


class StoreError(Exception):
    """KV backend I/O failure (transient from the pipeline's point of view)."""


class ConflictError(StoreError):
    """Optimistic update lost the race too many times."""


@runtime_checkable
class KVStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, key: str, value: dict[str, Any], *, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def set_if_absent(
        self, key: str, value: dict[str, Any], *, ttl: int | None = None
    ) -> bool: ...

    async def update(self, key: str, fn: Updater, *, ttl: int | None = None) -> dict[str, Any] | None: ...

    async def ttl(self, key: str) -> int | None: ...


def _dumps(value: dict[str, Any]) -> str:
    return json.dumps(value, default=str)


class RedisKVStore:
    """Redis-backed KV store."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        max_update_attempts: int = _DEFAULT_UPDATE_ATTEMPTS,
    ):
        self._redis = client
        self._max_update_attempts = max_update_attempts

    @classmethod
    def from_url(cls, redis_url: str) -> RedisKVStore:
        return cls(aioredis.from_url(redis_url, decode_responses=True))

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise StoreError(f"get {key!r} failed") from exc
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: dict[str, Any], *, ttl: int | None = None) -> None:
        try:
            await self._redis.set(key, _dumps(value), ex=ttl)
        except RedisError as exc:
            raise StoreError(f"put {key!r} failed") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            raise StoreError(f"delete {key!r} failed") from exc

    async def set_if_absent(
        self, key: str, value: dict[str, Any], *, ttl: int | None = None
    ) -> bool:
        try:
            return bool(await self._redis.set(key, _dumps(value), nx=True, ex=ttl))
        except RedisError as exc:
            raise StoreError(f"set_if_absent {key!r} failed") from exc

    async def update(self, key: str, fn: Updater, *, ttl: int | None = None) -> dict[str, Any] | None:
        """Read-modify-write ``key`` atomically with respect to other writers.

        ``fn`` may be called more than once; it must be free of side effects.
        Returns the value written, or None if ``fn`` chose to skip the write.
        """
        for attempt in range(1, self._max_update_attempts + 1):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = json.loads(raw) if raw is not None else None
                    new_value = fn(current)
                    if new_value is None:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.set(key, _dumps(new_value), ex=ttl)
                    await pipe.execute()
                    return new_value
            except WatchError:
                logger.info(
                    "Concurrent write on %s, retrying update (%d/%d)",
                    key, attempt, self._max_update_attempts,
                )
            except RedisError as exc:
                raise StoreError(f"update {key!r} failed") from exc
        raise ConflictError(
            f"update {key!r} conflicted {self._max_update_attempts} times"
        )

    async def ttl(self, key: str) -> int | None:
        try:
            remaining = await self._redis.ttl(key)
        except RedisError as exc:
            raise StoreError(f"ttl {key!r} failed") from exc
        return remaining if remaining >= 0 else None


class InMemoryKVStore:
    """Dict-backed KV store with per-entry expiry.

    Values are stored serialized so callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        item = self._data.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return raw

    def _write(self, key: str, value: dict[str, Any], ttl: int | None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[key] = (_dumps(value), expires_at)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: dict[str, Any], *, ttl: int | None = None) -> None:
        self._write(key, value, ttl)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_if_absent(
        self, key: str, value: dict[str, Any], *, ttl: int | None = None
    ) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._write(key, value, ttl)
            return True

    async def update(self, key: str, fn: Updater, *, ttl: int | None = None) -> dict[str, Any] | None:
        async with self._lock:
            raw = self._live(key)
            new_value = fn(json.loads(raw) if raw is not None else None)
            if new_value is None:
                return None
            self._write(key, new_value, ttl)
            return new_value

    async def ttl(self, key: str) -> int | None:
        if self._live(key) is None:
            return None
        _, expires_at = self._data[key]
        if expires_at is None:
            return None
        return max(int(expires_at - time.monotonic()), 0)

    def keys(self) -> list[str]:
        return [k for k in list(self._data) if self._live(k) is not None]
