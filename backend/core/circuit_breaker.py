"""Circuit breaker for best-effort external stores.

After ``failure_threshold`` consecutive failures the breaker opens and callers
skip the store for ``recovery_timeout`` seconds. The next call after the
cooldown is let through (half-open); success closes the breaker again, so a
store that comes back is picked up without a restart.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Health tracker for one external dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 1,
        recovery_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._last_failure = 0.0
        self._state = "closed"  # closed, open, half-open

    @property
    def state(self) -> str:
        return self._state

    def can_execute(self) -> bool:
        """Check if calls to the dependency are currently allowed."""
        with self._lock:
            if self._state != "open":
                return True

            elapsed = self._clock() - self._last_failure
            if elapsed >= self.recovery_timeout:
                self._state = "half-open"
                logger.info(f"Circuit half-open for {self.name} after {elapsed:.1f}s cooldown")
                return True
            return False

    def record_success(self) -> None:
        """Record a successful call and reset the breaker."""
        with self._lock:
            if self._state != "closed":
                logger.info(f"Circuit CLOSED for {self.name}, store reachable again")
            self._failures = 0
            self._state = "closed"

    def record_failure(self, error: Optional[str] = None) -> None:
        """Record a failed call; may trip the breaker."""
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()

            if self._state == "half-open" or self._failures >= self.failure_threshold:
                if self._state != "open":
                    logger.warning(
                        f"Circuit OPENED for {self.name} after "
                        f"{self._failures} consecutive failure(s). "
                        f"Cooldown: {self.recovery_timeout}s. Last error: {error}"
                    )
                self._state = "open"
