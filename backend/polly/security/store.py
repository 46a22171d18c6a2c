"""
Key/value storage shared by the rate limiter, failed-attempt tracker and
device registry.

``MemoryStore`` keeps everything in process memory and is the default for
local development and tests. ``RedisStore`` is used when ``REDIS_URL`` is set
so that several workers see the same counters.

Read-modify-write sequences go through :meth:`KeyValueStore.update`, which
both stores run atomically: under the store lock in memory, and as a
``WATCH``/``MULTI`` transaction that retries on conflict in Redis.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, TypeVar, runtime_checkable

import redis
from redis.exceptions import WatchError

from polly.core.settings import Settings

Clock = Callable[[], float]
T = TypeVar("T")

# Receives the current value (None when missing) and returns the value to
# store (None leaves the key untouched) together with the caller's result.
Updater = Callable[[Optional[str]], Tuple[Optional[str], T]]

SWEEP_EVERY = 1000


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        ...

    def update(self, key: str, updater: Updater, ttl_seconds: Optional[int] = None) -> Any:
        ...

    def expire(self, key: str, ttl_seconds: int) -> None:
        ...

    def ttl(self, key: str) -> Optional[int]:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> None:
        ...


class MemoryStore:
    """
    In-memory store with per-key expiry. Every operation holds one lock.

    Expired entries are dropped when read, and all of them are swept every
    ``sweep_every`` writes so keys that are never read again do not pile up.
    """

    def __init__(self, clock: Clock = time.time, sweep_every: int = SWEEP_EVERY) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._writes = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _now(self) -> float:
        return self._clock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return entry

    def _write(self, key: str, value: str, expires_at: Optional[float]) -> None:
        self._data[key] = (value, expires_at)
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._sweep()

    def _sweep(self) -> None:
        now = self._now()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._data[key]
        self._writes = 0

    def _expires_at(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._now() + ttl_seconds if ttl_seconds else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._write(key, value, self._expires_at(ttl_seconds))

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Increment ``key``; with ``ttl_seconds`` the expiry is reset in the same step."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value, expires_at = 0, None
            else:
                value, expires_at = int(entry[0]), entry[1]
            value += 1
            if ttl_seconds:
                expires_at = self._expires_at(ttl_seconds)
            self._write(key, str(value), expires_at)
            return value

    def update(self, key: str, updater: Updater, ttl_seconds: Optional[int] = None) -> Any:
        with self._lock:
            entry = self._live(key)
            value, result = updater(entry[0] if entry else None)
            if value is not None:
                self._write(key, value, self._expires_at(ttl_seconds))
            return result

    def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                self._data[key] = (entry[0], self._now() + ttl_seconds)

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(round(entry[1] - self._now())))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._data if k.startswith(prefix)]:
                del self._data[key]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._writes = 0


def _decode(value: Any) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisStore:
    """Redis-backed store. Counters and updates are atomic across processes."""

    def __init__(self, client: "redis.Redis", key_prefix: str = "polly:") -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "polly:") -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        return _decode(self._client.get(self._k(key)))

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            self._client.set(self._k(key), value, ex=ttl_seconds)
        else:
            self._client.set(self._k(key), value)

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        name = self._k(key)
        if not ttl_seconds:
            return int(self._client.incr(name))
        # INCR and EXPIRE in one MULTI/EXEC so a counter never lives without a TTL
        with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(name)
            pipe.expire(name, ttl_seconds)
            count, _ = pipe.execute()
        return int(count)

    def update(self, key: str, updater: Updater, ttl_seconds: Optional[int] = None) -> Any:
        name = self._k(key)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(name)
                    value, result = updater(_decode(pipe.get(name)))
                    if value is None:
                        pipe.unwatch()
                        return result
                    pipe.multi()
                    if ttl_seconds:
                        pipe.set(name, value, ex=ttl_seconds)
                    else:
                        pipe.set(name, value)
                    pipe.execute()
                    return result
                except WatchError:
                    # Another worker changed the key; recompute from its value.
                    continue

    def expire(self, key: str, ttl_seconds: int) -> None:
        self._client.expire(self._k(key), ttl_seconds)

    def ttl(self, key: str) -> Optional[int]:
        remaining = self._client.ttl(self._k(key))
        # -2: missing key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    def delete(self, key: str) -> None:
        self._client.delete(self._k(key))

    def delete_prefix(self, prefix: str) -> None:
        keys = list(self._client.scan_iter(match=f"{self._k(prefix)}*"))
        if keys:
            self._client.delete(*keys)


def create_store(settings: Settings, clock: Clock = time.time) -> KeyValueStore:
    if settings.redis_url:
        return RedisStore.from_url(settings.redis_url)
    return MemoryStore(clock=clock)


__all__ = ["Clock", "KeyValueStore", "MemoryStore", "RedisStore", "Updater", "create_store"]
