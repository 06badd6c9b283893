"""Fixed-rate periodic timer.

One worker thread runs the callback every `interval_seconds`. Ticks never
overlap: if a tick is still running when the next one is due, the missed slots
are skipped and the timer realigns to the next slot on the original grid.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class PeriodicTimer:
    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], object],
        *,
        name: str = "periodic-timer",
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = float(interval_seconds)
        self._callback = callback
        self._name = name
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise RuntimeError(f"{self._name} already started")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()

    def stop(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop scheduling new ticks; an in-flight tick runs to completion."""
        self._stop.set()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        next_at = time.monotonic() + (0.0 if self._run_immediately else self.interval_seconds)
        while not self._stop.wait(max(0.0, next_at - time.monotonic())):
            self._tick()
            next_at += self.interval_seconds
            now = time.monotonic()
            if next_at <= now:
                missed = int((now - next_at) // self.interval_seconds) + 1
                self.skipped += missed
                next_at += missed * self.interval_seconds
                logger.warning(f"{self._name}: tick overran, skipped {missed} slot(s)")

    def _tick(self) -> None:
        self.ticks += 1
        try:
            self._callback()
        except Exception:
            logger.exception(f"{self._name}: tick failed")
