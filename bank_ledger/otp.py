"""
OTP Challenge Store

Short-lived numeric one-time codes keyed by an identifier (account number
or admin username). At most one live code per identifier; a verified code
is consumed and cannot be replayed.
"""

import hmac
import secrets
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional


@dataclass
class OTPChallenge:
    code: str
    issued_at: float
    expires_at: float
    consumed: bool = False


class OTPChallengeStore:
    """In-process OTP store with an injectable clock"""

    def __init__(self, length: int = 6, expiry_minutes: int = 5,
                 clock: Callable[[], float] = time.time):
        if length <= 0:
            raise ValueError("OTP length must be greater than 0")
        if expiry_minutes <= 0:
            raise ValueError("OTP expiry must be greater than 0")
        self.length = length
        self.expiry_seconds = expiry_minutes * 60
        self._clock = clock
        self._challenges: Dict[str, OTPChallenge] = {}
        self._lock = Lock()

    def _generate(self) -> str:
        return str(secrets.randbelow(10 ** self.length)).zfill(self.length)

    def issue(self, identifier: str) -> str:
        """
        Issue a fresh code, replacing any earlier one for the identifier

        Returns:
            The numeric code (delivery is the caller's job)
        """
        if not identifier:
            raise ValueError("OTP identifier is required")
        now = self._clock()
        code = self._generate()
        with self._lock:
            self._challenges[identifier] = OTPChallenge(
                code=code, issued_at=now, expires_at=now + self.expiry_seconds
            )
        return code

    def verify(self, identifier: str, code: Optional[str]) -> bool:
        """True once for a matching, unconsumed, unexpired code"""
        if not identifier or not code:
            return False
        now = self._clock()
        with self._lock:
            challenge = self._challenges.get(identifier)
            if challenge is None or challenge.consumed or now > challenge.expires_at:
                return False
            if not hmac.compare_digest(challenge.code, code.strip()):
                return False
            challenge.consumed = True
            return True

    def purge_expired(self) -> int:
        """Drop expired or consumed codes; returns how many were removed"""
        now = self._clock()
        with self._lock:
            stale = [k for k, c in self._challenges.items() if c.consumed or now > c.expires_at]
            for key in stale:
                del self._challenges[key]
            return len(stale)
