"""
Circuit breaker for remote endpoint categories.
"""

import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Rolling-window circuit breaker.

    Opens when the failure fraction over the last ``window_seconds`` exceeds
    ``failure_ratio`` with at least ``min_calls`` samples. After
    ``cooldown_seconds`` a single trial call is let through; its outcome
    closes or re-opens the breaker.
    """

    def __init__(
        self,
        name: str = "default",
        failure_ratio: float = 0.5,
        window_seconds: float = 60.0,
        min_calls: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_ratio = failure_ratio
        self.window_seconds = window_seconds
        self.min_calls = min_calls
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self.state = BreakerState.CLOSED
        self._samples: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        self.successful_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0
        self.times_opened = 0

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    @property
    def failure_fraction(self) -> float:
        self._prune(self._clock())
        if not self._samples:
            return 0.0
        failures = sum(1 for _, ok in self._samples if not ok)
        return failures / len(self._samples)

    def can_attempt(self) -> bool:
        """Check if a call may go through; may move OPEN to HALF_OPEN"""
        if self.state == BreakerState.CLOSED:
            return True

        now = self._clock()
        if self.state == BreakerState.OPEN:
            if self._opened_at is not None and now - self._opened_at >= self.cooldown_seconds:
                self.state = BreakerState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"Circuit breaker '{self.name}' half-open, allowing trial call")
                return True
            self.rejected_calls += 1
            return False

        # HALF_OPEN: only the single trial call is allowed
        if self._trial_in_flight:
            self.rejected_calls += 1
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        """Record a successful call"""
        now = self._clock()
        self.successful_calls += 1
        self._samples.append((now, True))
        self._prune(now)

        if self.state != BreakerState.CLOSED:
            logger.info(f"Circuit breaker '{self.name}' closed after successful trial")
            self.state = BreakerState.CLOSED
            self._opened_at = None
            self._trial_in_flight = False
            self._samples.clear()

    def record_failure(self) -> None:
        """Record a failed call"""
        now = self._clock()
        self.failed_calls += 1
        self._samples.append((now, False))
        self._prune(now)

        if self.state == BreakerState.HALF_OPEN:
            self._open(now)
            return

        if self.state == BreakerState.CLOSED and len(self._samples) >= self.min_calls:
            if self.failure_fraction > self.failure_ratio:
                self._open(now)

    def _open(self, now: float) -> None:
        self.state = BreakerState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self.times_opened += 1
        logger.warning(
            f"Circuit breaker '{self.name}' opened "
            f"(failure fraction {self.failure_fraction:.2f} over {len(self._samples)} calls)"
        )

    def abandon_trial(self) -> None:
        """A trial call was cancelled before producing an outcome"""
        if self.state == BreakerState.HALF_OPEN:
            self._trial_in_flight = False

    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self._samples.clear()
        self._opened_at = None
        self._trial_in_flight = False

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_fraction": round(self.failure_fraction, 3),
            "samples": len(self._samples),
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "times_opened": self.times_opened,
        }
