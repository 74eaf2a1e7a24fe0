import threading
import time
from collections import deque
from collections.abc import Callable

from pydantic import BaseModel

from web_access_mcp.errors import RateLimitedError


class RateLimitStatus(BaseModel):
    used: int
    max: int
    oldest_timestamp: float | None
    window_seconds: float


class RateLimitWindow:
    """A sliding window over the timestamps of the most recent admitted requests."""

    max_requests: int
    window_seconds: float

    def __init__(self, max_requests: int = 10, window_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        window_start = now - self.window_seconds

        while self._timestamps and self._timestamps[0] < window_start:
            self._timestamps.popleft()

    def admit(self) -> RateLimitStatus:
        """Admit a request or raise `RateLimitedError`. Admitted requests are recorded immediately,
        so a request that fails later still counts against the window."""

        with self._lock:
            now = self._clock()
            self._prune(now)

            if len(self._timestamps) >= self.max_requests:
                retry_after = self._timestamps[0] + self.window_seconds - now
                raise RateLimitedError(retry_after=max(retry_after, 0.0))

            self._timestamps.append(now)

            return self._status()

    def status(self) -> RateLimitStatus:
        with self._lock:
            self._prune(self._clock())
            return self._status()

    def _status(self) -> RateLimitStatus:
        return RateLimitStatus(
            used=len(self._timestamps),
            max=self.max_requests,
            oldest_timestamp=self._timestamps[0] if self._timestamps else None,
            window_seconds=self.window_seconds,
        )
