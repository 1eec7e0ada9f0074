"""One-shot timer scheduling.

The Scheduler capability lets expiry logic arm timers without knowing
whether they are backed by real threads or by a fake clock in tests.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ScheduledTask(ABC):
    """Handle returned by Scheduler.after()."""

    @abstractmethod
    def cancel(self) -> None:
        """Prevent the callback from running. No-op if it already ran."""


class Scheduler(ABC):
    """Runs callbacks after a delay and reports the current time."""

    @abstractmethod
    def after(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        """Run callback once, delay seconds from now."""

    def now(self) -> float:
        """Current time in epoch seconds."""
        return time.time()


class _TimerTask(ScheduledTask):
    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class TimerScheduler(Scheduler):
    """Scheduler backed by daemon threading.Timer threads."""

    def after(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        def _run() -> None:
            try:
                callback()
            except Exception as e:
                logger.error("Scheduled callback failed: %s", e)

        timer = threading.Timer(max(delay, 0.0), _run)
        timer.daemon = True
        timer.name = "expiry-timer"
        timer.start()
        return _TimerTask(timer)
