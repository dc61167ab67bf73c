"""Fixed-interval background loop."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopStatus:
    running: bool
    interval_seconds: float


class IntervalLoop:
    """Call tick_fn every interval_seconds on a daemon thread.

    The first tick fires one interval after start. Stopping only prevents
    further ticks; a tick already running finishes on its own.
    """

    def __init__(self, interval_seconds: float, tick_fn: Callable[[], None], *, name: str = "memories-loop") -> None:
        self._interval_seconds = interval_seconds
        self._tick_fn = tick_fn
        self._name = name
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    def tick_once(self) -> None:
        try:
            self._tick_fn()
        except Exception:  # noqa: BLE001
            logger.exception("loop: tick failed", extra={"loop": self._name})

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        if self._interval_seconds <= 0:
            return
        stop = threading.Event()
        self._stop = stop

        def _runner() -> None:
            while not stop.wait(self._interval_seconds):
                self.tick_once()

        self._thread = threading.Thread(target=_runner, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    def status(self) -> LoopStatus:
        return LoopStatus(
            running=bool(self._thread and self._thread.is_alive()),
            interval_seconds=self._interval_seconds,
        )
