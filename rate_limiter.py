"""Adaptive per-venue rate limiter.

Tracks the quota a venue actually announces in its response headers
instead of a guessed static rate. Callers queue in FIFO order inside
``acquire()`` and block until the window resets when quota runs out.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Mapping, Optional

from config import RATE_LIMIT_LOW_WATER, RATE_LIMIT_WINDOW_S
from models import RateLimitState

logger = logging.getLogger(__name__)

_REMAINING_HEADERS = ("x-ratelimit-remaining", "ratelimit-remaining", "x-rate-limit-remaining")
_RESET_HEADERS = ("x-ratelimit-reset", "ratelimit-reset", "x-rate-limit-reset")
_LIMIT_HEADERS = ("x-ratelimit-limit", "ratelimit-limit", "x-rate-limit-limit")


def _first_header(headers: Mapping[str, str], names) -> Optional[str]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value not in (None, ""):
            return value
    return None


def _parse_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        # Some venues send "30, 30;w=60" style values; the first field wins.
        return float(str(raw).split(",")[0].split(";")[0].strip())
    except ValueError:
        return None


def parse_reset(raw: float, now: float) -> float:
    """Convert a reset header value to an absolute epoch-seconds timestamp.

    Accepts epoch milliseconds, epoch seconds, or seconds-until-reset.
    """
    if raw > 1e12:
        return raw / 1000.0
    if raw > 1e9:
        return raw
    return now + raw


class AdaptiveRateLimiter:
    """Header-driven throttle for one venue. Thread-safe."""

    def __init__(
        self,
        name: str,
        default_limit: int,
        default_window_s: float = RATE_LIMIT_WINDOW_S,
        low_water: float = RATE_LIMIT_LOW_WATER,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.default_limit = default_limit
        self.default_window_s = default_window_s
        self.low_water = low_water
        self._clock = clock
        self._sleep = sleep
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._state = RateLimitState(
            remaining=default_limit,
            reset_at=clock() + default_window_s,
            limit=default_limit,
        )

    def acquire(self) -> None:
        """Block until one request's worth of quota is available, then take it."""
        ticket = object()
        with self._cond:
            self._queue.append(ticket)
        try:
            while True:
                with self._cond:
                    while self._queue[0] is not ticket:
                        self._cond.wait()
                    now = self._clock()
                    if now >= self._state.reset_at:
                        self._state.remaining = self._state.limit
                        self._state.reset_at = now + self.default_window_s
                    if self._state.remaining > 0:
                        self._state.remaining -= 1
                        return
                    wait_s = max(0.0, self._state.reset_at - now)
                logger.info(
                    "[%s] Rate limit reached, waiting %.1fs for reset (%d queued)",
                    self.name, wait_s, len(self._queue),
                )
                self._sleep(wait_s)
        finally:
            with self._cond:
                self._queue.remove(ticket)
                self._cond.notify_all()

    def update_from_headers(self, headers: Optional[Mapping[str, str]]) -> None:
        """Refresh remaining/reset/limit from a response's headers.

        Missing headers leave the current state (and its default window)
        untouched.
        """
        if not headers:
            return
        remaining = _parse_number(_first_header(headers, _REMAINING_HEADERS))
        reset = _parse_number(_first_header(headers, _RESET_HEADERS))
        limit = _parse_number(_first_header(headers, _LIMIT_HEADERS))

        with self._cond:
            if limit is not None and limit > 0:
                self._state.limit = int(limit)
            if remaining is not None:
                self._state.remaining = max(0, int(remaining))
            if reset is not None:
                self._state.reset_at = parse_reset(reset, self._clock())
            state = RateLimitState(**vars(self._state))

        if state.limit > 0 and state.remaining < state.limit * self.low_water:
            logger.warning(
                "[%s] Rate limit low: %d/%d remaining, resets in %.0fs",
                self.name, state.remaining, state.limit,
                max(0.0, state.reset_at - self._clock()),
            )

    def snapshot(self) -> RateLimitState:
        with self._cond:
            return RateLimitState(**vars(self._state))

    def can_acquire(self) -> bool:
        """True if a request would go out without waiting right now."""
        with self._cond:
            if self._queue:
                return False
            return self._clock() >= self._state.reset_at or self._state.remaining > 0

    def estimated_wait(self) -> float:
        if self.can_acquire():
            return 0.0
        with self._cond:
            return max(0.0, self._state.reset_at - self._clock())

    def reset(self) -> None:
        with self._cond:
            self._state = RateLimitState(
                remaining=self.default_limit,
                reset_at=self._clock() + self.default_window_s,
                limit=self.default_limit,
            )
