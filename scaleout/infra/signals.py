"""
Process termination signals routed into the order lifecycle.

Each signal fires once: after delivery the handler is removed, so a second
Ctrl+C falls back to the default behaviour.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Iterable, List, Optional

from scaleout.execution.order_state_machine import InterruptSignal

log = logging.getLogger("scaleout")

DEFAULT_SIGNALS = tuple(
    s for s in (getattr(signal, name, None) for name in ("SIGINT", "SIGTERM", "SIGHUP")) if s is not None
)


class InterruptHandler:
    """Posts an InterruptSignal to `post` when the process is asked to stop."""

    def __init__(
        self,
        post: Callable[[InterruptSignal], None],
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        self._post = post
        self._signals = tuple(signals)
        self._installed: List[signal.Signals] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        for sig in self._signals:
            # Windows doesn't support add_signal_handler
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                continue
            self._installed.append(sig)

    def remove(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            self._loop.remove_signal_handler(sig)
        self._installed.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        if sig in self._installed and self._loop is not None:
            self._loop.remove_signal_handler(sig)
            self._installed.remove(sig)
        self._post(InterruptSignal(signal.Signals(sig).name))
