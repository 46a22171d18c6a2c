from __future__ import annotations

import json
import math
import time
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from polly.security.store import Clock, KeyValueStore


@dataclass
class RateLimitRecord:
    count: int
    first_attempt: float
    last_attempt: float


@dataclass
class RateLimitResult:
    limited: bool
    remaining: int
    time_remaining: Optional[int] = None
    message: Optional[str] = None


class RateLimiter:
    """
    Sliding-window attempt counter with a lockout period, for one dimension
    (client IP, submitted email, ...).

    Every call to :meth:`check` counts as an attempt, whatever the outcome of
    the request it guards.
    """

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 30 * 60,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self._clock = clock

    def _now(self) -> float:
        return self._clock()

    def key(self, identifier: str) -> str:
        return f"ratelimit:{self._namespace}:{identifier}"

    @property
    def record_ttl(self) -> int:
        # One second past both periods so a record is still there at the exact boundary.
        return max(self.window_seconds, self.lockout_seconds) + 1

    def _load(self, identifier: str) -> Optional[RateLimitRecord]:
        return self._parse(self._store.get(self.key(identifier)))

    @staticmethod
    def _parse(raw: Optional[str]) -> Optional[RateLimitRecord]:
        if raw is None:
            return None
        return RateLimitRecord(**json.loads(raw))

    def _decide(self, raw: Optional[str]) -> Tuple[Optional[str], RateLimitResult]:
        now = self._now()
        record = self._parse(raw)

        if record is not None and now - record.first_attempt <= self.window_seconds:
            if record.count >= self.max_attempts:
                since_last = now - record.last_attempt
                if since_last <= self.lockout_seconds:
                    time_remaining = math.ceil(self.lockout_seconds - since_last)
                    return None, RateLimitResult(
                        limited=True,
                        remaining=0,
                        time_remaining=time_remaining,
                        message=f"Too many attempts. Please try again in {math.ceil(time_remaining / 60)} minutes.",
                    )
                record = None
        else:
            record = None

        if record is None:
            record = RateLimitRecord(count=1, first_attempt=now, last_attempt=now)
        else:
            record.count += 1
            record.last_attempt = now

        remaining = self.max_attempts - record.count
        limited = remaining <= 0
        return json.dumps(asdict(record)), RateLimitResult(
            limited=limited,
            remaining=remaining,
            message="Too many attempts. Please try again later." if limited else None,
        )

    def check(self, identifier: str) -> RateLimitResult:
        """Count one attempt for ``identifier``; the read and write happen as one store update."""
        return self._store.update(self.key(identifier), self._decide, ttl_seconds=self.record_ttl)

    def get_record(self, identifier: str) -> Optional[RateLimitRecord]:
        return self._load(identifier)

    def reset(self, identifier: Optional[str] = None) -> None:
        if identifier is None:
            self._store.delete_prefix(f"ratelimit:{self._namespace}:")
        else:
            self._store.delete(self.key(identifier))


__all__ = ["RateLimitRecord", "RateLimitResult", "RateLimiter"]
