"""Online/offline state tracking."""

from __future__ import annotations

import logging
import threading
import urllib.error
import urllib.request
from typing import Callable

from memories_core.events import EventChannel
from memories_core.sync.loop import IntervalLoop

logger = logging.getLogger(__name__)


def http_probe(url: str, timeout_seconds: float = 3) -> Callable[[], bool]:
    """Build a probe that treats any HTTP answer below 500 as online."""

    def _probe() -> bool:
        request = urllib.request.Request(url=url, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=timeout_seconds) as response:  # noqa: S310
                return response.status < 500
        except urllib.error.HTTPError as exc:
            return exc.code < 500
        except Exception as exc:  # noqa: BLE001
            logger.debug("connectivity: probe failed: %s", exc)
            return False

    return _probe


class ConnectivityMonitor:
    """Point-in-time online checks plus a stream of transitions.

    State changes come either from probing (``refresh``/polling) or from an
    outside observer calling ``set_online``. Subscribers hear only edges.
    """

    def __init__(self, probe: Callable[[], bool] | None = None, *, poll_seconds: float = 0) -> None:
        self._probe = probe
        self._state: bool | None = None
        self._lock = threading.Lock()
        self.transitions: EventChannel[bool] = EventChannel("connectivity")
        self._poller = IntervalLoop(poll_seconds, self.refresh, name="memories-connectivity")

    def is_online(self) -> bool:
        if self._probe is None:
            with self._lock:
                return bool(self._state)
        online = bool(self._probe())
        self._record(online)
        return online

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        return self.transitions.subscribe(callback)

    def refresh(self) -> bool:
        return self.is_online()

    def set_online(self, online: bool) -> None:
        self._record(bool(online))

    def _record(self, online: bool) -> None:
        with self._lock:
            previous = self._state
            self._state = online
        if previous is online:
            return
        logger.info("connectivity: %s", "online" if online else "offline")
        self.transitions.emit(online)

    def start(self) -> None:
        self._poller.start()

    def stop(self) -> None:
        self._poller.stop()
