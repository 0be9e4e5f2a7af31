"""
Utility helpers.
"""

from __future__ import annotations

import threading
import time


def now_ms() -> int:
    return int(time.time() * 1000)


class ClientIdFactory:
    """
    Wall-clock derived client order ids.

    Ids are milliseconds since epoch, bumped by one when two requests land in
    the same millisecond so every id is unique and strictly increasing.
    """

    def __init__(self, clock=now_ms) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            cid = max(self._clock(), self._last + 1)
            self._last = cid
            return cid
