"""Periodic background task with cooperative cancellation."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs ``action(cancel_event)`` every ``interval`` seconds on a daemon thread.

    The action receives the task's stop event so long-running work can check
    it between units of work and return early once ``stop()`` is called.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[threading.Event], None],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.action = action
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancel_event(self) -> threading.Event:
        return self._stop

    def start(self) -> None:
        if self.running:
            logger.warning(f"[{self.name}] Already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        if self.run_immediately:
            self._tick()
        while not self._stop.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self.action(self._stop)
        except Exception:
            # A failing cycle must not kill the timer; next cycle retries
            logger.exception(f"[{self.name}] periodic action failed")
