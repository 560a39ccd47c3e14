"""
Circuit breaker for calls to the article store.

closed -> open after `failure_threshold` consecutive failures.
open -> half_open once `reset_timeout` seconds have passed.
half_open -> closed on the next success, back to open on the next failure.
"""
import threading
import time
from typing import Callable, Dict

import settings

logger = settings.get_logger('resilience')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """Thread-safe closed/open/half-open state machine."""

    def __init__(self, name: str,
                 failure_threshold: int = settings.BREAKER_FAILURE_THRESHOLD,
                 reset_timeout: float = settings.BREAKER_RESET_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = HALF_OPEN
            logger.info("Circuit breaker HALF-OPEN for %s - testing", self.name)
        return self._state

    def allow(self) -> bool:
        with self._lock:
            return self._current_state() != OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state != CLOSED:
                logger.info("Circuit breaker CLOSED for %s - normal operation", self.name)
            self._state = CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._failures += 1
            if state == HALF_OPEN or self._failures >= self.failure_threshold:
                if state != OPEN:
                    logger.warning("Circuit breaker OPEN for %s - failing fast", self.name)
                self._state = OPEN
                self._opened_at = self._clock()

    def call(self, fn: Callable, *args, **kwargs):
        if not self.allow():
            raise CircuitOpenError(f"circuit '{self.name}' is open")
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def stats(self) -> Dict:
        with self._lock:
            return {
                'name': self.name,
                'state': self._current_state(),
                'consecutiveFailures': self._failures,
            }
