"""
Cancellable scheduled tasks.

Background loops (screenshot streaming, health checks, cool-downs) run as
self-rescheduling steps on a daemon thread. Each step returns the delay until
the next run; the cancellation token is checked at every reschedule point.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-way cancellation flag that can also be waited on."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds.

        Returns:
            True if cancelled before or during the wait
        """
        return self._event.wait(timeout)


class ScheduledTask:
    """Runs ``step`` repeatedly on a daemon thread.

    ``step`` returns the number of seconds until it should run again, or None
    to finish. An exception raised by ``step`` is logged and ends the task.

    Usage:
        task = ScheduledTask(poll, name="health-check", initial_delay=60)
        task.start()
        ...
        task.cancel()
    """

    def __init__(
        self,
        step: Callable[[], Optional[float]],
        name: str,
        initial_delay: float = 0.0,
    ):
        self._step = step
        self.name = name
        self.initial_delay = initial_delay
        self.token = CancellationToken()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ScheduledTask":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.token.cancel()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self.token.cancelled

    def _run(self) -> None:
        delay: Optional[float] = self.initial_delay
        while delay is not None and not self.token.wait(max(delay, 0.0)):
            try:
                delay = self._step()
            except Exception:
                logger.exception("Scheduled task %s failed", self.name)
                return


def run_later(fn: Callable[[], None], delay: float, name: str) -> ScheduledTask:
    """Run ``fn`` once after ``delay`` seconds unless cancelled first."""

    def once() -> None:
        fn()
        return None

    return ScheduledTask(once, name=name, initial_delay=delay).start()
