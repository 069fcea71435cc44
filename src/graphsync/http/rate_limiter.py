"""Sliding-window admission control and backoff state shared by all endpoints."""

from collections import deque
from typing import Callable, Optional
import random
import threading
import time
import structlog

from ..config.models import RateLimitConfig

logger = structlog.get_logger(__name__)


def compute_backoff(
    attempt: int,
    initial_delay: float,
    multiplier: float,
    max_delay: float,
    jitter: bool = False,
    rng: Optional[random.Random] = None
) -> float:
    """
    Compute the retry delay for a 1-based attempt number.

    ``min(max_delay, initial_delay * multiplier ** (attempt - 1))``, scaled by a
    uniform factor in ``[0.8, 1.2]`` when jitter is enabled.

    Args:
        attempt: Attempt that just failed (1 for the first)
        initial_delay: Delay after the first failure
        multiplier: Growth factor
        max_delay: Upper bound before jitter
        jitter: Randomize the delay by +/-20%
        rng: Random source

    Returns:
        Delay in seconds
    """
    attempt = max(1, attempt)
    delay = min(max_delay, initial_delay * multiplier ** (attempt - 1))
    if jitter:
        delay *= (rng or random).uniform(0.8, 1.2)
    return delay


class RateLimiter:
    """
    Process-wide sliding window of admitted request timestamps.

    One instance is shared by every endpoint so that the request budget is
    global. ``acquire`` blocks the caller until a slot is free; the lock is
    never held while sleeping.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None
    ):
        self.config = config
        self.max_requests = config.max_requests_per_minute
        self.window_seconds = config.window_seconds
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._admitted = deque()
        self.consecutive_failures = 0
        self.current_backoff = 0.0

    def _purge(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._admitted and self._admitted[0] <= cutoff:
            self._admitted.popleft()

    def _try_admit(self, now: float) -> float:
        """Admit at ``now`` and return 0, or return the wait for the next free slot. Lock held."""
        self._purge(now)
        if len(self._admitted) < self.max_requests:
            self._admitted.append(now)
            return 0.0
        return self._admitted[0] + self.window_seconds - now

    def acquire(self) -> float:
        """
        Wait for a slot in the window and record the admission.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                wait = self._try_admit(self._clock())
            if wait <= 0:
                return waited

            logger.debug("Rate limit reached, waiting", wait_seconds=round(wait, 3),
                         max_requests=self.max_requests)
            self._sleep(wait)
            waited += wait

    def in_window(self) -> int:
        """Number of admissions inside the trailing window."""
        with self._lock:
            self._purge(self._clock())
            return len(self._admitted)

    def backoff_delay(self, attempt: int) -> float:
        """Backoff for ``attempt`` using the configured schedule."""
        return compute_backoff(
            attempt,
            initial_delay=self.config.initial_retry_delay_seconds,
            multiplier=self.config.backoff_multiplier,
            max_delay=self.config.max_retry_delay_seconds,
            jitter=self.config.jitter,
            rng=self._rng,
        )

    def record_failure(self, delay: float) -> None:
        with self._lock:
            self.consecutive_failures += 1
            self.current_backoff = delay

    def record_success(self) -> None:
        """Reset failure tracking; admitted timestamps are kept."""
        with self._lock:
            self.consecutive_failures = 0
            self.current_backoff = 0.0

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)
