"""
Request-count window with a fixed cooldown.

A window admits at most ``threshold`` dispatches. Once all of them have
completed the window pauses for ``duration`` ticks, then a new window
opens. A threshold of 0 disables pausing.
"""

from labsupply.logger import get_logger

logger = get_logger(__name__)


class DispatchWindow:

    def __init__(self, threshold: int, duration: int):
        if threshold < 0 or duration < 0:
            raise ValueError("threshold and duration must be >= 0")
        self.threshold = threshold
        self.duration = duration
        self.dispatched = 0
        self.completed = 0
        self.countdown = 0

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    @property
    def paused(self) -> bool:
        return self.countdown > 0

    def available(self) -> int:
        """Number of dispatches the window still admits, ignoring concurrency."""
        if self.paused:
            return 0
        if not self.enabled:
            return -1
        return max(self.threshold - self.dispatched, 0)

    def slots(self, concurrency_limit: int, in_flight: int) -> int:
        free = max(concurrency_limit - in_flight, 0)
        budget = self.available()
        return free if budget < 0 else min(free, budget)

    def record_dispatch(self) -> None:
        self.dispatched += 1

    def record_completion(self) -> bool:
        """Count one finished request. Returns True when this starts a pause."""
        if not self.enabled:
            return False
        self.completed += 1
        if self.completed < self.threshold:
            return False
        if self.duration == 0:
            self._reset()
            return False
        self.countdown = self.duration
        logger.info("Completed %d requests, pausing for %d units", self.completed, self.duration)
        return True

    def tick(self) -> bool:
        """Advance the countdown by one unit. Returns True when the pause ends."""
        if not self.paused:
            return False
        self.countdown -= 1
        if self.countdown > 0:
            return False
        self._reset()
        logger.info("Pause finished, dispatch resumes")
        return True

    def _reset(self) -> None:
        self.dispatched = 0
        self.completed = 0
        self.countdown = 0
