"""
Location cache backends.

One interface, two implementations, picked when the store is built:

* ``RedisLocationStore``   -- shared low-latency store; keys expire natively.
* ``MemoryLocationStore``  -- in-process TTL map; expired entries are hidden
  on read and physically removed by ``purge_expired`` (run by the location
  sweep), since a dict has no native expiry.

``FailoverLocationStore`` fronts Redis with a memory store and switches to
it whenever Redis is unreachable at call time, so callers never branch on
which backend is active.

Values are JSON objects.  ``set_if_newer`` is a compare-and-swap on the
``_ts`` field (epoch seconds): an older sample never overwrites a newer one.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from dispatch.domain.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

TIMESTAMP_FIELD = "_ts"

DRIVER_LOCATION_PREFIX = "driver:location:"
DELIVERY_TRACKING_PREFIX = "delivery:tracking:"


def driver_location_key(driver_id: str) -> str:
    return f"{DRIVER_LOCATION_PREFIX}{driver_id}"


def delivery_tracking_key(delivery_id: str) -> str:
    return f"{DELIVERY_TRACKING_PREFIX}{delivery_id}"


class LocationStore(ABC):
    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def keys_with_prefix(self, prefix: str) -> list[str]: ...

    @abstractmethod
    async def set_if_newer(
        self, key: str, value: dict[str, Any], ttl_seconds: int, timestamp: float
    ) -> bool:
        """Write unless the stored entry carries a newer ``_ts``."""

    async def purge_expired(self) -> int:
        return 0

    async def count_with_prefix(self, prefix: str) -> int:
        return len(await self.keys_with_prefix(prefix))


# ── Redis ─────────────────────────────────────────────────────────────

_SET_IF_NEWER = """
local current = redis.call("get", KEYS[1])
if current then
    local ok, decoded = pcall(cjson.decode, current)
    if ok and decoded["_ts"] and tonumber(decoded["_ts"]) > tonumber(ARGV[2]) then
        return 0
    end
end
redis.call("set", KEYS[1], ARGV[1], "EX", ARGV[3])
return 1
"""

_UNREACHABLE = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisLocationStore(LocationStore):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except _UNREACHABLE:
            return False

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.redis.set(key, json.dumps(value), ex=ttl_seconds)
        except _UNREACHABLE as exc:
            raise DependencyUnavailable("Location cache unavailable") from exc

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self.redis.get(key)
        except _UNREACHABLE as exc:
            raise DependencyUnavailable("Location cache unavailable") from exc
        return json.loads(raw) if raw else None

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except _UNREACHABLE as exc:
            raise DependencyUnavailable("Location cache unavailable") from exc

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        try:
            return [key async for key in self.redis.scan_iter(match=f"{prefix}*", count=500)]
        except _UNREACHABLE as exc:
            raise DependencyUnavailable("Location cache unavailable") from exc

    async def set_if_newer(
        self, key: str, value: dict[str, Any], ttl_seconds: int, timestamp: float
    ) -> bool:
        payload = json.dumps({**value, TIMESTAMP_FIELD: timestamp})
        try:
            written = await self.redis.eval(
                _SET_IF_NEWER, 1, key, payload, repr(timestamp), ttl_seconds
            )
        except _UNREACHABLE as exc:
            raise DependencyUnavailable("Location cache unavailable") from exc
        return bool(written)


# ── In-process ────────────────────────────────────────────────────────


class MemoryLocationStore(LocationStore):
    """
    Dict of ``key -> (expires_at, value)``.

    All operations are synchronous under the hood, so under asyncio the
    compare-and-swap in ``set_if_newer`` cannot be interleaved.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}

    def _live(self, key: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            return None
        return value

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, dict(value))

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        value = self._live(key)
        return dict(value) if value is not None else None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        return [
            k
            for k in list(self._entries)
            if k.startswith(prefix) and self._live(k) is not None
        ]

    async def set_if_newer(
        self, key: str, value: dict[str, Any], ttl_seconds: int, timestamp: float
    ) -> bool:
        current = self._live(key)
        if current is not None and float(current.get(TIMESTAMP_FIELD, 0)) > timestamp:
            return False
        self._entries[key] = (
            self._clock() + ttl_seconds,
            {**value, TIMESTAMP_FIELD: timestamp},
        )
        return True

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ── Fail-over ─────────────────────────────────────────────────────────


class FailoverLocationStore(LocationStore):
    def __init__(self, primary: LocationStore, fallback: MemoryLocationStore):
        self.primary = primary
        self.fallback = fallback
        self.degraded = False

    def _fail_over(self, operation: str) -> None:
        if not self.degraded:
            logger.warning(
                "Location cache unreachable during %s; using in-process fallback",
                operation,
            )
        self.degraded = True

    def _recovered(self) -> None:
        if self.degraded:
            logger.info("Location cache reachable again")
        self.degraded = False

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.primary.set(key, value, ttl_seconds)
        except DependencyUnavailable:
            self._fail_over("set")
            await self.fallback.set(key, value, ttl_seconds)
        else:
            self._recovered()

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            value = await self.primary.get(key)
        except DependencyUnavailable:
            self._fail_over("get")
            return await self.fallback.get(key)
        self._recovered()
        return value

    async def delete(self, key: str) -> None:
        await self.fallback.delete(key)
        try:
            await self.primary.delete(key)
        except DependencyUnavailable:
            self._fail_over("delete")

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        try:
            keys = await self.primary.keys_with_prefix(prefix)
        except DependencyUnavailable:
            self._fail_over("scan")
            return await self.fallback.keys_with_prefix(prefix)
        self._recovered()
        return keys

    async def set_if_newer(
        self, key: str, value: dict[str, Any], ttl_seconds: int, timestamp: float
    ) -> bool:
        try:
            written = await self.primary.set_if_newer(key, value, ttl_seconds, timestamp)
        except DependencyUnavailable:
            self._fail_over("set_if_newer")
            return await self.fallback.set_if_newer(key, value, ttl_seconds, timestamp)
        self._recovered()
        return written

    async def purge_expired(self) -> int:
        return await self.fallback.purge_expired()


async def build_location_store(client: Optional[aioredis.Redis]) -> LocationStore:
    """Redis with in-process fail-over if Redis answers now, else memory only."""
    if client is not None:
        redis_store = RedisLocationStore(client)
        if await redis_store.ping():
            logger.info("Location cache backed by Redis")
            return FailoverLocationStore(redis_store, MemoryLocationStore())
    logger.warning("Redis not available at startup; using in-process location cache")
    return MemoryLocationStore()
