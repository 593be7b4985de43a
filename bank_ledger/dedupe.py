"""
Duplicate-Request Guard

Suppresses double submission of identical mutating requests within a short
window. Process-local: a restart clears it, and several instances do not
share it.
"""

import time
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Optional


class DuplicateRequestGuard:
    def __init__(self, window_seconds: float = 3.0,
                 clock: Callable[[], float] = time.monotonic):
        if window_seconds <= 0:
            raise ValueError("Duplicate window must be greater than 0")
        self.window_seconds = window_seconds
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = Lock()

    @staticmethod
    def build_key(operation: str, *accounts: Optional[str], amount: Decimal,
                  client_request_id: Optional[str] = None) -> str:
        """Composite key: TYPE|account(s)|amount|client request id"""
        parts = [operation.upper()]
        parts.extend(a for a in accounts if a)
        parts.append(str(amount))
        parts.append(client_request_id or "")
        return "|".join(parts)

    def seen(self, key: str, window: Optional[float] = None) -> bool:
        """
        True if the key was seen within the window. Either way the key is
        (re)marked with the current time.
        """
        window = self.window_seconds if window is None else window
        now = self._clock()
        with self._lock:
            last = self._seen.get(key)
            self._seen[key] = now
            if len(self._seen) > 1024:
                self._purge(now, window)
            return last is not None and now - last < window

    def _purge(self, now: float, window: float) -> None:
        for key in [k for k, t in self._seen.items() if now - t >= window]:
            del self._seen[key]

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
