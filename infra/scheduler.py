"""Interval scheduler that owns its own thread handle."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0


class IterationScheduler:
    """
    Calls ``task`` every ``interval_seconds``, measured start to start.

    Each instance holds its own thread and stop event, so several schedulers
    (tests, one per tenant) can run side by side. Exceptions raised by the
    task are logged and the schedule continues.
    """

    def __init__(self, task: Callable[[], Any], interval_seconds: float, name: str = "IterationScheduler"):
        self._task = task
        self._interval = max(float(interval_seconds), MIN_INTERVAL_SECONDS)
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run the schedule in a background thread."""
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_blocking, name=self._name, daemon=True)
        self._thread.start()
        logger.info("%s started (interval=%.1fs)", self._name, self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("%s stopped after %d runs", self._name, self.runs)

    def run_blocking(self, max_runs: Optional[int] = None) -> None:
        """Run the schedule in the calling thread until stopped."""
        while not self._stop_event.is_set():
            start = time.monotonic()
            self._run_once()
            if max_runs is not None and self.runs >= max_runs:
                break

            elapsed = time.monotonic() - start
            sleep_for = max(0.0, self._interval - elapsed)
            if elapsed > self._interval:
                logger.warning("%s run took %.2fs, longer than interval %.1fs", self._name, elapsed, self._interval)
            self._stop_event.wait(sleep_for)

    def _run_once(self) -> None:
        self.runs += 1
        try:
            self._task()
        except Exception as exc:
            self.failures += 1
            logger.exception("%s task failed: %s", self._name, exc)


__all__ = ["IterationScheduler"]
