"""Cancellable periodic task on a dedicated thread."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

TickFunction = Callable[[int], bool]
"""Called with a counter starting at 1. Return False to stop ticking."""


class PeriodicTask:
    """Calls a tick function at a fixed rate until cancelled.

    The first tick fires immediately on start(). Ticks are scheduled
    against a monotonic deadline, so a slow tick shortens the next wait
    instead of shifting every later tick. An exception in the tick stops
    the task, is kept in ``error`` and is passed to ``on_error``.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: TickFunction,
        on_error: Callable[[BaseException], None] | None = None,
        on_finished: Callable[[], None] | None = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._tick = tick
        self._on_error = on_error
        self._on_finished = on_finished
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._thread: threading.Thread | None = None
        self.error: BaseException | None = None
        self.ticks = 0

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Periodic task {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the task thread. Returns True if it has exited."""
        if self._thread is None:
            return True
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    @property
    def finished(self) -> bool:
        """True once the task stopped by itself, by cancel or by error."""
        return self._finished.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._finished.is_set()

    def _run(self) -> None:
        counter = 1
        deadline = time.monotonic()
        try:
            while not self._stop.is_set():
                keep_going = self._tick(counter)
                self.ticks = counter
                if keep_going is False:
                    break
                counter += 1
                deadline += self.interval
                if self._stop.wait(max(0.0, deadline - time.monotonic())):
                    break
        except Exception as e:
            self.error = e
            logger.error("Periodic task %s failed on tick %d: %s", self.name, counter, e)
            if self._on_error is not None:
                self._on_error(e)
        finally:
            self._finished.set()
            if self._on_finished is not None and self.error is None:
                self._on_finished()
