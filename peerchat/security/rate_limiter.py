import time


class RateLimiter:
    """Sliding-window limiter: at most `max_calls` within `period` seconds."""

    def __init__(self, max_calls: int, period: float, clock=time.monotonic):
        self.max_calls = max_calls
        self.period = period
        self.calls = []
        self._clock = clock

    def _prune(self, now: float):
        self.calls = [t for t in self.calls if now - t < self.period]

    def check(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self.calls) >= self.max_calls:
            return False
        self.calls.append(now)
        return True

    def retry_after(self) -> float:
        """Seconds until the oldest call in the window expires (0 if a slot is free)."""
        now = self._clock()
        self._prune(now)
        if len(self.calls) < self.max_calls:
            return 0.0
        return max(0.0, self.period - (now - self.calls[0]))
