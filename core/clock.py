"""
Session Clock
Countdown anchored to wall-clock time instead of a decrementing counter,
so tab suspension or slow timers never cause drift.
"""

import logging
import math
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class SessionClock:
    """
    Countdown primitive with start / pause / resume and a single expiry callback.

    Remaining time is kept in integer milliseconds. While running it is
    recomputed from the start anchor; while stopped it is frozen.
    """

    def __init__(
        self,
        duration_seconds: float,
        now_ms: Callable[[], int] = wall_clock_ms,
        on_expire: Optional[Callable[[], None]] = None,
    ):
        self._now_ms = now_ms
        self.on_expire = on_expire
        self.duration_ms = int(round(duration_seconds * 1000))
        self._remaining_ms = self.duration_ms
        self.started_at_ms: Optional[int] = None
        self.running = False
        self.expired = False

    # ── Derived values ──

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000

    @property
    def remaining_ms(self) -> int:
        if self.running:
            return self._live_remaining_ms()
        return self._remaining_ms

    @property
    def remaining_seconds(self) -> float:
        return self.remaining_ms / 1000

    @property
    def display_seconds(self) -> int:
        """Whole seconds for display, rounded up so 0 only shows at expiry"""
        return int(math.ceil(self.remaining_ms / 1000))

    @property
    def elapsed_seconds(self) -> float:
        return (self.duration_ms - self.remaining_ms) / 1000

    @property
    def started(self) -> bool:
        return self.started_at_ms is not None

    def _live_remaining_ms(self) -> int:
        return max(0, self.duration_ms - (self._now_ms() - self.started_at_ms))

    # ── Transitions ──

    def start(self) -> bool:
        if self.running or self.expired:
            return False
        self.started_at_ms = self._now_ms()
        self._remaining_ms = self.duration_ms
        self.running = True
        return True

    def pause(self) -> bool:
        if not self.running:
            return False
        self._remaining_ms = self._live_remaining_ms()
        self.running = False
        return True

    def resume(self) -> bool:
        if self.running or self.expired:
            return False
        self.started_at_ms = self._now_ms() - (self.duration_ms - self._remaining_ms)
        self.running = True
        # A clock restored at zero expires on the first tick after resume
        return True

    def stop(self):
        """Freeze the clock without firing expiry"""
        if self.running:
            self._remaining_ms = self._live_remaining_ms()
        self.running = False

    def tick(self) -> int:
        """Recompute remaining time. Fires expiry once when it reaches zero."""
        if not self.running:
            return self._remaining_ms

        self._remaining_ms = self._live_remaining_ms()
        if self._remaining_ms <= 0 and not self.expired:
            self.running = False
            self.expired = True
            logger.info("Session clock expired")
            if self.on_expire:
                self.on_expire()
        return self._remaining_ms

    def restore(self, remaining_seconds: float, started_at_ms: Optional[int]):
        """Load a frozen clock from a checkpoint"""
        self._remaining_ms = max(0, min(self.duration_ms, int(round(remaining_seconds * 1000))))
        self.started_at_ms = started_at_ms
        self.running = False
        self.expired = False

    def reset(self, duration_seconds: Optional[float] = None):
        """Re-arm a full-duration clock for a new attempt"""
        if duration_seconds is not None:
            self.duration_ms = int(round(duration_seconds * 1000))
        self._remaining_ms = self.duration_ms
        self.started_at_ms = None
        self.running = False
        self.expired = False
