from __future__ import annotations

import base64
from typing import Optional

from polly.security.store import KeyValueStore


class FailedAttemptTracker:
    """
    Counts failed credential checks per identifier (normally the email).

    Unlike :class:`~polly.security.rate_limit.RateLimiter`, only real
    failures are counted. The counter expires ``ttl_seconds`` after its last
    write.
    """

    def __init__(self, store: KeyValueStore, threshold: int = 5, ttl_seconds: int = 15 * 60) -> None:
        self._store = store
        self.threshold = threshold
        self.ttl_seconds = ttl_seconds

    def key(self, identifier: str) -> str:
        encoded = base64.b64encode(identifier.encode("utf-8")).decode("ascii")
        return f"failed_{encoded}"

    def track_failed_attempt(self, identifier: str) -> int:
        """Register a failed attempt and return the new total."""
        # Count and expiry are written together; a counter without a TTL would lock the account for good.
        return self._store.incr(self.key(identifier), ttl_seconds=self.ttl_seconds)

    def reset_failed_attempts(self, identifier: str) -> None:
        self._store.set(self.key(identifier), "0", ttl_seconds=self.ttl_seconds)

    def get_failed_attempts(self, identifier: str) -> int:
        raw = self._store.get(self.key(identifier))
        try:
            return max(0, int(raw or "0"))
        except ValueError:
            return 0

    def is_account_locked(self, identifier: str) -> bool:
        return self.get_failed_attempts(identifier) >= self.threshold

    def lock_time_remaining(self, identifier: str) -> Optional[int]:
        if not self.is_account_locked(identifier):
            return None
        return self._store.ttl(self.key(identifier))


__all__ = ["FailedAttemptTracker"]
