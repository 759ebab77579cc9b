"""Debounce ledger for crashwatch.

A time-bounded set of failure keys. ``try_acquire`` is a single atomic
check-and-set so that concurrent reconciles of the same failure let exactly
one caller through. State is held in-process; restarting crashwatch resets
all cooldowns.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

_log = structlog.get_logger(component="ledger.debounce")

DEFAULT_TTL_SECONDS = 300.0


class DebounceLedger:
    """Suppresses duplicate incidents within a per-key cooldown window.

    Expired keys are reclaimed lazily on access and by ``sweep()``. An
    expired key is never reported as present.

    Args:
        default_ttl: Cooldown applied when ``try_acquire`` gets no ttl.
        clock:       Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        self._default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        # key -> absolute expiry on self._clock
        self._expiry: dict[str, float] = {}

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def try_acquire(self, key: str, ttl: float | None = None) -> bool:
        """Record *key* for *ttl* seconds unless it is already live.

        Returns:
            True  -- the key was absent or expired and is now recorded.
            False -- the key is live; nothing was changed.
        """
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        with self._lock:
            now = self._clock()
            expiry = self._expiry.get(key)
            if expiry is not None and expiry > now:
                _log.debug(
                    "debounce_key_live",
                    key=key,
                    seconds_remaining=round(expiry - now, 1),
                )
                return False
            self._expiry[key] = now + ttl
            return True

    def contains(self, key: str) -> bool:
        """Return True if *key* is recorded and unexpired."""
        with self._lock:
            expiry = self._expiry.get(key)
            if expiry is None:
                return False
            if expiry <= self._clock():
                del self._expiry[key]
                return False
            return True

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, expiry in self._expiry.items() if expiry <= now]
            for key in expired:
                del self._expiry[key]
        if expired:
            _log.debug("debounce_sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expiry in self._expiry.values() if expiry > now)
