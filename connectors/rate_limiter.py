"""
RateLimiter — process-wide read budget for one provider's API.

Providers publish budgets over several overlapping fixed windows (Strava:
100 reads per 15 minutes, 1000 per day).  Windows are aligned to the
epoch, so a 15-minute window starts on a quarter hour and a daily window
starts at UTC midnight.

The pre-flight check (``can_make_read_request``) and the consuming call
(``acquire``) read the same counters under one lock, so skipping the
pre-check never lets a caller exceed the budget.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence

from core.clock import Clock, system_clock
from utils.errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_MS = 5000
SHORT_WINDOW_BUFFER_MS = 1000
MAX_LONG_WINDOW_BACKOFF_MS = 30 * 60 * 1000


@dataclass
class RateLimitWindow:
    """One budget window: ``capacity`` calls per ``period_seconds``."""

    name: str
    capacity: int
    period_seconds: int
    usage: int = 0
    window_start: float = 0.0
    max_backoff_ms: Optional[int] = None

    def start_for(self, ts: float) -> float:
        return math.floor(ts / self.period_seconds) * self.period_seconds

    def ms_until_reset(self, ts: float) -> int:
        end = self.start_for(ts) + self.period_seconds
        return max(0, int(math.ceil((end - ts) * 1000)))


@dataclass
class RateLimitSnapshot:
    windows: List[RateLimitWindow] = field(default_factory=list)


class RateLimiter:
    """
    Thread-safe multi-window budget tracker.

    Parameters
    ----------
    windows : sequence of RateLimitWindow
        Ordered the way the provider lists them in its rate-limit headers.
    headroom : float
        Fraction of each window's capacity held back (``floor(capacity*headroom)``).
    limit_header / usage_header : str
        Response headers carrying comma-separated per-window limits / usage.
    """

    def __init__(
        self,
        windows: Sequence[RateLimitWindow],
        *,
        headroom: float = 0.0,
        clock: Clock = system_clock,
        limit_header: str = "X-ReadRateLimit-Limit",
        usage_header: str = "X-ReadRateLimit-Usage",
    ) -> None:
        if not windows:
            raise ValueError("RateLimiter needs at least one window")
        self._defaults = [replace(w) for w in windows]
        self._windows = [replace(w) for w in windows]
        self._headroom = headroom
        self._clock = clock
        self._limit_header = limit_header
        self._usage_header = usage_header
        self._lock = threading.Lock()

    # ── Window bookkeeping (caller holds the lock) ──────────────────────

    def _roll(self, ts: float) -> None:
        for w in self._windows:
            start = w.start_for(ts)
            if start > w.window_start:
                w.window_start = start
                w.usage = 0

    def _allowance(self, w: RateLimitWindow) -> int:
        return w.capacity - int(math.floor(w.capacity * self._headroom))

    def _exhausted(self) -> List[RateLimitWindow]:
        return [w for w in self._windows if w.usage >= self._allowance(w)]

    def _retry_after(self, ts: float) -> int:
        exhausted = self._exhausted()
        if not exhausted:
            return DEFAULT_RETRY_AFTER_MS
        delays = []
        for w in exhausted:
            if w.max_backoff_ms is None:
                delays.append(w.ms_until_reset(ts) + SHORT_WINDOW_BUFFER_MS)
            else:
                delays.append(min(w.ms_until_reset(ts), w.max_backoff_ms))
        return max(delays)

    # ── Public API ──────────────────────────────────────────────────────

    def can_make_read_request(self) -> bool:
        """Pre-flight check. Does not consume budget."""
        with self._lock:
            self._roll(self._clock.timestamp())
            return not self._exhausted()

    def get_retry_after_ms(self) -> int:
        with self._lock:
            ts = self._clock.timestamp()
            self._roll(ts)
            return self._retry_after(ts)

    def acquire(self) -> None:
        """
        Consume one call from every window, or raise ``RateLimitedError``.

        Check and increment happen under the same lock.
        """
        with self._lock:
            ts = self._clock.timestamp()
            self._roll(ts)
            if self._exhausted():
                retry_after = self._retry_after(ts)
                logger.info("Rate limit budget exhausted, retry after %d ms", retry_after)
                raise RateLimitedError(retry_after_ms=retry_after)
            for w in self._windows:
                w.usage += 1

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Resync limits and usage from the provider's response headers."""
        limits = _parse_header(headers.get(self._limit_header))
        usages = _parse_header(headers.get(self._usage_header))
        if not limits and not usages:
            return
        with self._lock:
            self._roll(self._clock.timestamp())
            for i, w in enumerate(self._windows):
                if i < len(limits) and limits[i] > 0:
                    w.capacity = limits[i]
                if i < len(usages):
                    # Local counting may run ahead of the provider's view.
                    w.usage = max(w.usage, usages[i])

    def snapshot(self) -> RateLimitSnapshot:
        with self._lock:
            self._roll(self._clock.timestamp())
            return RateLimitSnapshot(windows=[replace(w) for w in self._windows])

    def usage_percentages(self) -> Dict[str, float]:
        with self._lock:
            self._roll(self._clock.timestamp())
            return {
                w.name: (w.usage / w.capacity) * 100 if w.capacity > 0 else 0.0
                for w in self._windows
            }

    def reset(self) -> None:
        with self._lock:
            self._windows = [replace(w) for w in self._defaults]


def _parse_header(value: Optional[str]) -> List[int]:
    if not value:
        return []
    parsed = []
    for part in value.split(","):
        try:
            parsed.append(int(part.strip()))
        except ValueError:
            parsed.append(0)
    return parsed


def fifteen_minute_and_daily(
    limit_15min: int,
    limit_daily: int,
    *,
    headroom: float = 0.1,
    clock: Clock = system_clock,
) -> RateLimiter:
    """The common two-window shape (Strava and friends)."""
    return RateLimiter(
        [
            RateLimitWindow("15min", limit_15min, 15 * 60),
            RateLimitWindow("daily", limit_daily, 24 * 60 * 60, max_backoff_ms=MAX_LONG_WINDOW_BACKOFF_MS),
        ],
        headroom=headroom,
        clock=clock,
    )
