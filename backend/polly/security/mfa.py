from __future__ import annotations

import json
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

import bcrypt
import pyotp
from pyotp.utils import strings_equal

from polly.security.store import Clock, KeyValueStore

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8
BACKUP_CODES_TOTAL = 10
ISSUER = "Polly"


@dataclass
class MfaEnrollment:
    user_id: str
    secret: str
    backup_code_hashes: List[str]
    used_backup_codes: List[str] = field(default_factory=list)
    last_used_step: Optional[int] = None


def _generate_backup_code() -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(BACKUP_CODE_LENGTH))


def _hash_backup_code(code: str) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


class MfaRegistry:
    """TOTP secrets and single-use backup codes, one enrollment per user id."""

    def __init__(self, store: KeyValueStore, issuer: str = ISSUER, clock: Clock = time.time) -> None:
        self._store = store
        self.issuer = issuer
        self._clock = clock

    def key(self, user_id: str) -> str:
        return f"mfa:{user_id}"

    def _load(self, user_id: str) -> Optional[MfaEnrollment]:
        raw = self._store.get(self.key(user_id))
        if not raw:
            return None
        return MfaEnrollment(**json.loads(raw))

    def _save(self, enrollment: MfaEnrollment) -> None:
        self._store.set(self.key(enrollment.user_id), json.dumps(asdict(enrollment)))

    def is_enrolled(self, user_id: str) -> bool:
        return self._load(user_id) is not None

    def enroll(self, user_id: str, email: str) -> Tuple[str, List[str]]:
        """Create (or replace) an enrollment; returns the otpauth URI and the plain backup codes."""
        secret = pyotp.random_base32()
        codes = [_generate_backup_code() for _ in range(BACKUP_CODES_TOTAL)]
        enrollment = MfaEnrollment(
            user_id=user_id,
            secret=secret,
            backup_code_hashes=[_hash_backup_code(code) for code in codes],
        )
        self._save(enrollment)
        uri = pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.issuer)
        return uri, codes

    def verify_totp(self, user_id: str, code: Optional[str], valid_window: int = 1) -> bool:
        """
        Accept ``code`` if it matches a time step within ``valid_window`` of now
        that is later than the last accepted one, so each code works once.
        """
        if not code:
            return False

        def consume(raw: Optional[str]) -> Tuple[Optional[str], bool]:
            if not raw:
                return None, False
            enrollment = MfaEnrollment(**json.loads(raw))
            totp = pyotp.TOTP(enrollment.secret)
            current = int(self._clock() // totp.interval)
            for step in range(current - valid_window, current + valid_window + 1):
                if enrollment.last_used_step is not None and step <= enrollment.last_used_step:
                    continue
                if strings_equal(str(code), totp.generate_otp(step)):
                    enrollment.last_used_step = step
                    return json.dumps(asdict(enrollment)), True
            return None, False

        return self._store.update(self.key(user_id), consume)

    def try_backup_code(self, user_id: str, code: Optional[str]) -> bool:
        enrollment = self._load(user_id)
        if not enrollment or not code:
            return False
        code_bytes = code.strip().upper().encode("utf-8")
        # bcrypt runs outside the store update; only marking the code used is atomic.
        match = next(
            (
                hashed
                for hashed in enrollment.backup_code_hashes
                if hashed not in enrollment.used_backup_codes and bcrypt.checkpw(code_bytes, hashed.encode("ascii"))
            ),
            None,
        )
        if match is None:
            return False

        def mark_used(raw: Optional[str]) -> Tuple[Optional[str], bool]:
            if not raw:
                return None, False
            current = MfaEnrollment(**json.loads(raw))
            if match in current.used_backup_codes or match not in current.backup_code_hashes:
                return None, False
            current.used_backup_codes.append(match)
            return json.dumps(asdict(current)), True

        return self._store.update(self.key(user_id), mark_used)

    def remove(self, user_id: str) -> None:
        self._store.delete(self.key(user_id))


__all__ = ["MfaEnrollment", "MfaRegistry"]
