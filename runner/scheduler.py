"""Periodic background tasks (tick, monitor and reaper loops)."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run `fn` every `interval_seconds` on a daemon thread until stopped.

    The next run is scheduled from the start of the previous one, plus up to
    `jitter_pct` percent of random delay. A failing run is logged and the
    schedule continues.
    """

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], object],
                 jitter_pct: float = 0.0, run_immediately: bool = True):
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.jitter_pct = float(jitter_pct)
        self.run_immediately = run_immediately
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Started %s (every %.1fs, jitter %.0f%%)", self.name, self.interval_seconds, self.jitter_pct)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self.name, timeout)
        self._thread = None

    def run_once(self) -> None:
        self.runs += 1
        try:
            self._fn()
        except Exception as exc:
            self.failures += 1
            logger.error("%s run failed: %s", self.name, exc, exc_info=True)

    def _next_delay(self, elapsed: float) -> float:
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds if self.jitter_pct else 0.0
        return max(0.0, self.interval_seconds - elapsed + jitter)

    def _run(self) -> None:
        if not self.run_immediately and self._stop.wait(self.interval_seconds):
            return
        while not self._stop.is_set():
            start = time.monotonic()
            self.run_once()
            elapsed = time.monotonic() - start
            if elapsed > self.interval_seconds:
                logger.warning("%s took %.2fs, longer than its %.1fs interval", self.name, elapsed,
                               self.interval_seconds)
            if self._stop.wait(self._next_delay(elapsed)):
                break
        logger.info("%s stopped", self.name)
