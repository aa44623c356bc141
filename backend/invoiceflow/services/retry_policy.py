"""Cooldown gate for retrying a failed deep audit.

A pure time gate: the policy only holds the next eligible time per key and
never cancels or schedules anything itself. Callers query ``remaining`` to
drive a countdown.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable


class RetryCooldown:
    def __init__(self, cooldown_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._next_eligible: dict[str, float] = {}
        self._lock = Lock()

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def arm(self, key: str) -> float:
        """Start the cooldown for *key* and return the next eligible time."""
        with self._lock:
            eligible_at = self._clock() + self._cooldown_seconds
            self._next_eligible[key] = eligible_at
            return eligible_at

    def remaining(self, key: str) -> float:
        with self._lock:
            eligible_at = self._next_eligible.get(key)
            if eligible_at is None:
                return 0.0
            left = eligible_at - self._clock()
            if left <= 0:
                del self._next_eligible[key]
                return 0.0
            return left

    def is_ready(self, key: str) -> bool:
        return self.remaining(key) == 0.0

    def reset(self, key: str) -> None:
        with self._lock:
            self._next_eligible.pop(key, None)
