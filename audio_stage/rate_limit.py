from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

WINDOW_SECONDS = 1.0


class RateLimiter:
    """
    Thread-safe files-per-second limiter shared by all processing workers.

    Each acquisition holds a token for one second, so no rolling one-second
    window ever contains more than ``rate`` acquisitions. ``rate <= 0``
    disables limiting.
    """

    def __init__(
        self,
        rate: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate = rate
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._issued: Deque[float] = deque()

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """Block until a token is free. Returns ``False`` if cancelled while waiting."""
        if not self.enabled:
            return True
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return False
            with self._lock:
                now = self._clock()
                while self._issued and now - self._issued[0] >= WINDOW_SECONDS:
                    self._issued.popleft()
                if len(self._issued) < self.rate:
                    self._issued.append(now)
                    return True
                wait = WINDOW_SECONDS - (now - self._issued[0])
            self._sleep(max(wait, 0.001))
