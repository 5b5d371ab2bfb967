# src/portfolio_ledger/connection/rate_limiter.py

import time
import threading
from typing import Callable


class RateLimiter:
    """
    Token bucket limiting outbound price requests.

    ``burst`` tokens are available up front; afterwards tokens refill at
    ``calls_per_second``. :meth:`wait` blocks until a token is available.
    """
    def __init__(
        self,
        calls_per_second: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if calls_per_second <= 0:
            raise ValueError("Rate must be positive")
        if burst < 1:
            raise ValueError("Burst must be at least 1")
        self.rate = calls_per_second
        self.capacity = float(burst)
        self.tokens = float(burst)
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()
        self.lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.last_refill = now

    def try_acquire(self) -> bool:
        """Take a token without blocking; returns False when the bucket is empty."""
        with self.lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return True
            return False

    def wait(self):
        """
        Blocks until it is safe to make the next call.
        """
        with self.lock:
            self._refill()
            if self.tokens < 1:
                self._sleep((1 - self.tokens) / self.rate)
                self._refill()
                # The sleep may undershoot; never let the bucket go below empty.
                self.tokens = max(self.tokens, 1.0)
            self.tokens -= 1
