"""Process-wide spacing of outbound calls to the Xero API."""

import logging
import threading
import time
from typing import Callable

from ..config import settings

logger = logging.getLogger(__name__)


class OutboundThrottle:
    """Enforces a minimum interval between consecutive outbound calls.

    Each caller reserves the next free slot under the lock and sleeps
    outside it, so concurrent requests queue up one interval apart
    without holding the lock while waiting.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> float:
        """Block until this caller may send. Returns the seconds waited."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        delay = slot - now
        if delay > 0:
            logger.debug(f"Throttling outbound Xero call for {delay:.3f}s")
            self._sleep(delay)
        return delay

    def reset(self) -> None:
        with self._lock:
            self._next_slot = 0.0


# Shared by every request handled by this process
outbound_throttle = OutboundThrottle(settings.xero_min_request_interval)
