from __future__ import annotations

"""In-memory fixed-window rate limiting.

Counters live in process memory only; a multi-instance deployment needs a
shared backend instead.
"""

import logging
import math
import time
from dataclasses import dataclass
from threading import Event, RLock, Thread
from typing import Callable, Dict, Mapping, Optional

from ..config import RATE_LIMITS, RateLimitConfig
from ..domain.errors import RateLimited
from ..observability.metrics import RATE_LIMIT_REJECTIONS


logger = logging.getLogger(__name__)

GLOBAL_KEY = "global:all"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _RateLimitEntry:
    count: int
    reset_at: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int


class RateLimiter:
    """Fixed-window request counter keyed by arbitrary strings.

    ``clock`` returns epoch milliseconds. The sweep thread only runs between
    ``start()`` and ``stop()``; ``sweep()`` can also be called directly.
    """

    def __init__(
        self,
        clock: Callable[[], int] = _now_ms,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._store: Dict[str, _RateLimitEntry] = {}
        self._lock = RLock()
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def now(self) -> int:
        return self._clock()

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)

            if entry is None or now >= entry.reset_at:
                reset_at = now + config.window_ms
                self._store[key] = _RateLimitEntry(count=1, reset_at=reset_at)
                return RateLimitResult(allowed=True, remaining=config.max_requests - 1, reset_at=reset_at)

            if entry.count >= config.max_requests:
                return RateLimitResult(allowed=False, remaining=0, reset_at=entry.reset_at)

            entry.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - entry.count,
                reset_at=entry.reset_at,
            )

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if now >= entry.reset_at]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug("rate_limit_sweep", extra={"evicted": len(expired)})
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    # ------------------------------------------------------------------
    # Sweep lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._sweep_loop, name="rate-limit-sweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=5)

    def reset(self) -> None:
        """Clear in-memory counters (useful for tests)."""

        with self._lock:
            self._store.clear()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            self.sweep()


def retry_after_seconds(reset_at: int, now: int) -> int:
    return max(math.ceil((reset_at - now) / 1000), 1)


class RateLimitGate:
    """Two-tier enforcement: the caller's own quota first, then the shared global ceiling."""

    def __init__(
        self,
        limiter: RateLimiter,
        limits: Optional[Mapping[str, RateLimitConfig]] = None,
        *,
        disabled: bool = False,
    ) -> None:
        self.limiter = limiter
        self.limits: Dict[str, RateLimitConfig] = dict(limits or RATE_LIMITS)
        self.disabled = disabled

    def config_for(self, category: str) -> RateLimitConfig:
        try:
            return self.limits[category]
        except KeyError:
            raise KeyError(f"Unknown rate limit category: {category}")

    def enforce(self, category: str, identity: str) -> RateLimitResult:
        """Count one request for ``identity`` and raise ``RateLimited`` if either tier denies it."""

        config = self.config_for(category)
        if self.disabled:
            return RateLimitResult(allowed=True, remaining=config.max_requests, reset_at=self.limiter.now())

        result = self.limiter.check(f"{category}:{identity}", config)
        if not result.allowed:
            RATE_LIMIT_REJECTIONS.labels(category=category, tier="identity").inc()
            logger.info("rate_limited", extra={"category": category, "tier": "identity"})
            raise RateLimited(
                retry_after=retry_after_seconds(result.reset_at, self.limiter.now()),
                limit=config.max_requests,
                remaining=0,
                reset_at_ms=result.reset_at,
            )

        global_config = self.config_for("global")
        global_result = self.limiter.check(GLOBAL_KEY, global_config)
        if not global_result.allowed:
            RATE_LIMIT_REJECTIONS.labels(category=category, tier="global").inc()
            logger.warning("rate_limited_global", extra={"category": category})
            raise RateLimited(
                "Service is experiencing high load. Please try again shortly.",
                retry_after=retry_after_seconds(global_result.reset_at, self.limiter.now()),
                limit=global_config.max_requests,
                remaining=0,
                reset_at_ms=global_result.reset_at,
            )
        return result
