"""
Device fingerprinting and the per-user list of known devices.

The fingerprint is a reversible encoding of the user agent and client IP.
It only identifies a device for equality checks and must not be treated as
a secret.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
import json
import time
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

from polly.security.store import Clock, KeyValueStore


@dataclass
class DeviceRecord:
    fingerprint: str
    user_agent: str
    last_seen: float


@dataclass
class DeviceCheck:
    is_known_device: bool
    requires_verification: bool


def generate_fingerprint(user_agent: str, ip: str) -> str:
    return base64.b64encode(f"{user_agent}:{ip}".encode("utf-8")).decode("ascii")


def decode_fingerprint(fingerprint: str) -> Tuple[str, str]:
    """Return ``(user_agent, ip)``. Raises ``ValueError`` on malformed input."""
    try:
        raw = base64.b64decode(fingerprint.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as exc:
        raise ValueError("malformed fingerprint") from exc
    # Both halves may contain colons (Firefox "rv:", IPv6), so prefer the
    # longest suffix that parses as an address.
    for index, char in enumerate(raw):
        if char != ":":
            continue
        try:
            ipaddress.ip_address(raw[index + 1:])
        except ValueError:
            continue
        return raw[:index], raw[index + 1:]
    user_agent, sep, ip = raw.rpartition(":")
    if not sep:
        raise ValueError("malformed fingerprint")
    return user_agent, ip


class DeviceRegistry:
    def __init__(
        self,
        store: KeyValueStore,
        max_devices: int = 10,
        max_age_seconds: int = 90 * 24 * 60 * 60,
        suspicious_failure_threshold: int = 3,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self.max_devices = max_devices
        self.max_age_seconds = max_age_seconds
        self.suspicious_failure_threshold = suspicious_failure_threshold
        self._clock = clock

    def _now(self) -> float:
        return self._clock()

    def key(self, user_id: str) -> str:
        return f"devices:{user_id}"

    @staticmethod
    def _parse(raw: Optional[str]) -> List[DeviceRecord]:
        if not raw:
            return []
        return [DeviceRecord(**item) for item in json.loads(raw)]

    @staticmethod
    def _dump(devices: List[DeviceRecord]) -> str:
        return json.dumps([asdict(d) for d in devices])

    def _prune(self, devices: List[DeviceRecord], now: float) -> List[DeviceRecord]:
        fresh = [d for d in devices if now - d.last_seen <= self.max_age_seconds]
        # Least recently seen devices go first.
        fresh.sort(key=lambda d: d.last_seen, reverse=True)
        return fresh[: self.max_devices]

    def list_devices(self, user_id: str) -> List[DeviceRecord]:
        return self._prune(self._parse(self._store.get(self.key(user_id))), self._now())

    def is_known_device(self, user_id: str, fingerprint: str) -> bool:
        return any(d.fingerprint == fingerprint for d in self.list_devices(user_id))

    def check_device_verification(self, user_id: str, fingerprint: str, user_agent: str) -> DeviceCheck:
        def record(raw: Optional[str]) -> Tuple[str, DeviceCheck]:
            now = self._now()
            devices = self._prune(self._parse(raw), now)
            check = DeviceCheck(is_known_device=False, requires_verification=True)
            for device in devices:
                if device.fingerprint == fingerprint:
                    device.last_seen = now
                    check = DeviceCheck(is_known_device=True, requires_verification=False)
                    break
            else:
                devices.append(DeviceRecord(fingerprint=fingerprint, user_agent=user_agent, last_seen=now))
            return self._dump(self._prune(devices, now)), check

        return self._store.update(self.key(user_id), record, ttl_seconds=self.max_age_seconds)

    def check_suspicious_activity(
        self,
        user_id: str,
        fingerprint: str,
        user_agent: str,
        *,
        failed_attempts: int,
    ) -> bool:
        """
        Heuristic only. Suspicious when there were many recent failures, or
        some failures followed by a login from a device never seen for this user.
        """
        if failed_attempts >= self.suspicious_failure_threshold:
            return True
        if failed_attempts > 0 and not self.is_known_device(user_id, fingerprint):
            return True
        return False

    def forget(self, user_id: str) -> None:
        self._store.delete(self.key(user_id))


__all__ = [
    "DeviceCheck",
    "DeviceRecord",
    "DeviceRegistry",
    "decode_fingerprint",
    "generate_fingerprint",
]
