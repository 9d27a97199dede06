"""
Consecutive-failure circuit breaker for the inference server.

Closed lets calls through. After ``max_failures`` consecutive failures the breaker opens and
rejects calls until ``cooldown_seconds`` have passed since the last failure; the first
``permit()`` after that closes it again with a fresh counter.
"""

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from loguru import logger

from .config import DEFAULT_CIRCUIT_COOLDOWN_SECONDS, DEFAULT_CIRCUIT_MAX_FAILURES

log = logger.bind(component="circuit_breaker")


class CircuitBreaker:
    """
    Track consecutive inference failures and gate access to the client.

    Mutations are serialized with a lock so a single breaker can be shared by worker threads.

    Examples:
        >>> clock = iter([0.0, 0.0, 0.0, 1.0]).__next__
        >>> breaker = CircuitBreaker(max_failures=2, cooldown_seconds=60, clock=clock)
        >>> breaker.record_failure(); breaker.record_failure()
        >>> breaker.permit()
        False

    """

    def __init__(
        self,
        max_failures: int = DEFAULT_CIRCUIT_MAX_FAILURES,
        cooldown_seconds: float = DEFAULT_CIRCUIT_COOLDOWN_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_failures < 1:
            msg = "max_failures must be at least 1"
            raise ValueError(msg)
        self.max_failures = max_failures
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self.last_failure_time: float | None = None
        self.last_reset_time: datetime | None = None
        self.is_open = False

    def permit(self) -> bool:
        """Return True when a call may be attempted, closing the breaker once cooldown is over."""
        with self._lock:
            if not self.is_open:
                return True
            now = self._clock()
            opened_at = self.last_failure_time if self.last_failure_time is not None else now
            if now >= opened_at + self.cooldown_seconds:
                self._close()
                self.last_reset_time = datetime.now(tz=UTC)
                log.info("circuit_closed_after_cooldown", cooldown_seconds=self.cooldown_seconds)
                return True
            log.debug(
                "circuit_rejected_call",
                remaining_seconds=round(opened_at + self.cooldown_seconds - now, 1),
            )
            return False

    def record_failure(self) -> None:
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_time = self._clock()
            if not self.is_open and self.consecutive_failures >= self.max_failures:
                self.is_open = True
                log.warning(
                    "circuit_opened",
                    failures=self.consecutive_failures,
                    cooldown_seconds=self.cooldown_seconds,
                )

    def record_success(self) -> None:
        with self._lock:
            if self.is_open or self.consecutive_failures:
                log.debug("circuit_reset_on_success", failures=self.consecutive_failures)
            self._close()

    def _close(self) -> None:
        self.consecutive_failures = 0
        self.last_failure_time = None
        self.is_open = False
