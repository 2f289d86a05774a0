"""Per-venue circuit breaker.

CLOSED -> (threshold consecutive failures) -> OPEN -> (cool-down) ->
HALF_OPEN -> one probe call -> CLOSED on success, or OPEN again with a
longer cool-down on failure.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from config import (
    CIRCUIT_BREAKER_BACKOFF, CIRCUIT_BREAKER_COOLDOWN_S,
    CIRCUIT_BREAKER_MAX_COOLDOWN_S, CIRCUIT_BREAKER_THRESHOLD,
)
from errors import CircuitOpenError
from models import CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Fails fast while a dependency is failing. Thread-safe."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        cooldown_s: float = CIRCUIT_BREAKER_COOLDOWN_S,
        backoff: float = CIRCUIT_BREAKER_BACKOFF,
        max_cooldown_s: float = CIRCUIT_BREAKER_MAX_COOLDOWN_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown_s = cooldown_s
        self.backoff = backoff
        self.max_cooldown_s = max_cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown_s = cooldown_s
        self._open_until = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def snapshot(self) -> dict:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "cooldown_s": self._cooldown_s,
                "retry_in": max(0.0, self._open_until - self._clock())
                if self._state == CircuitState.OPEN else 0.0,
            }

    def execute(self, fn: Callable[[], T], label: str = "call") -> T:
        """Run ``fn`` under the breaker.

        Raises CircuitOpenError without calling ``fn`` while the circuit is
        open, or while another caller holds the half-open probe.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                retry_in = max(0.0, self._open_until - self._clock())
                logger.warning(
                    "[%s] Circuit OPEN, rejecting %s (retry in %.0fs, failures=%d)",
                    self.name, label, retry_in, self._failures,
                )
                raise CircuitOpenError(self.name, retry_in)
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._probe_in_flight = True

        try:
            result = fn()
        except CircuitOpenError:
            # A nested circuit short-circuited, so this dependency was never called.
            self._release_probe()
            raise
        except Exception as e:
            self._on_failure(label, e)
            raise
        self._on_success(label)
        return result

    def reset(self) -> None:
        """Close the circuit and forget all failures (operator action)."""
        with self._lock:
            logger.info("[%s] Manual reset", self.name)
            self._close()

    def trip(self) -> None:
        """Force the circuit open for one base cool-down (emergency stop)."""
        with self._lock:
            logger.error("[%s] EMERGENCY STOP - circuit opened manually", self.name)
            self._failures = max(self._failures, self.failure_threshold)
            self._open(self.base_cooldown_s)

    # ------------------------
    # Internals (caller holds self._lock unless noted)
    # ------------------------
    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() >= self._open_until:
            logger.info("[%s] Cool-down elapsed, entering HALF_OPEN", self.name)
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False

    def _open(self, cooldown_s: float) -> None:
        self._state = CircuitState.OPEN
        self._cooldown_s = cooldown_s
        self._open_until = self._clock() + cooldown_s
        self._probe_in_flight = False

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown_s = self.base_cooldown_s
        self._open_until = 0.0
        self._probe_in_flight = False

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def _on_success(self, label: str) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("[%s] Probe %s succeeded, circuit CLOSED", self.name, label)
                self._close()
            elif self._failures:
                logger.debug(
                    "[%s] %s succeeded, clearing %d failures",
                    self.name, label, self._failures,
                )
                self._failures = 0

    def _on_failure(self, label: str, error: Optional[BaseException]) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                cooldown = min(self._cooldown_s * self.backoff, self.max_cooldown_s)
                self._open(cooldown)
                logger.error(
                    "[%s] Probe %s failed (%s), circuit re-OPENED for %.0fs",
                    self.name, label, error, cooldown,
                )
                return
            logger.warning(
                "[%s] %s failed (%d/%d): %s",
                self.name, label, self._failures, self.failure_threshold, error,
            )
            if self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._open(self.base_cooldown_s)
                logger.error(
                    "[%s] CIRCUIT OPENED after %d consecutive failures, "
                    "failing fast for %.0fs",
                    self.name, self._failures, self.base_cooldown_s,
                )
