"""Per-device cooldown rate limiting."""

from __future__ import annotations

import logging
import time
from functools import lru_cache
from threading import Lock
from typing import Callable, Dict

from settings import get_settings

logger = logging.getLogger(__name__)


class CooldownRateLimiter:
    """Accepts at most one request per device every ``min_interval`` seconds.

    There is no burst allowance. State is process-local and lost on restart.
    The check and the update happen under one lock so two concurrent requests
    for the same device cannot both be accepted inside one interval.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        prune_every: float = 60.0,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._last_accepted: Dict[str, float] = {}
        self._lock = Lock()
        self._prune_every = prune_every
        self._last_prune = clock()

    @property
    def enabled(self) -> bool:
        return self.min_interval > 0

    def allow(self, device_id: str) -> bool:
        if not self.enabled:
            return True
        with self._lock:
            now = self._clock()
            self._maybe_prune(now)
            last = self._last_accepted.get(device_id)
            if last is not None and now - last < self.min_interval:
                return False
            self._last_accepted[device_id] = now
            return True

    def retry_after(self, device_id: str) -> float:
        """Seconds until ``device_id`` may be accepted again."""
        if not self.enabled:
            return 0.0
        with self._lock:
            last = self._last_accepted.get(device_id)
            if last is None:
                return 0.0
            return max(0.0, self.min_interval - (self._clock() - last))

    def tracked_devices(self) -> int:
        with self._lock:
            return len(self._last_accepted)

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self._prune_every:
            return
        # Entries older than the interval behave exactly like missing ones.
        expired = [
            device_id
            for device_id, last in self._last_accepted.items()
            if now - last >= self.min_interval
        ]
        for device_id in expired:
            del self._last_accepted[device_id]
        self._last_prune = now
        if expired:
            logger.debug("Pruned %d idle rate-limit entries", len(expired))


@lru_cache
def build_default_rate_limiter() -> CooldownRateLimiter:
    settings = get_settings()
    limiter = CooldownRateLimiter(min_interval=settings.rate_limit_min_interval)
    logger.info(
        "Rate limiter ready: one reading per device every %.3fs",
        limiter.min_interval,
    )
    return limiter
