"""One-shot cleanup on interrupt and at interpreter exit."""

from __future__ import annotations

import atexit
import logging
import signal
import sys
import threading
from collections.abc import Callable
from types import FrameType

from dmagent.units import sweep_stale_scripts

LOGGER = logging.getLogger(__name__)

INTERRUPT_EXIT_CODE = 130


class CleanupRegistry:
    """Callbacks run at most once, in registration order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._done = False

    def register(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def run(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("cleanup_callback_failed")
        removed = sweep_stale_scripts()
        if removed:
            LOGGER.debug("cleanup_scripts_removed", extra={"count": removed})


def install_interrupt_handler(registry: CleanupRegistry) -> None:
    def _handle_interrupt(signum: int, frame: FrameType | None) -> None:
        print("\nInterrupted. Cleaning up...", file=sys.stderr)
        registry.run()
        raise SystemExit(INTERRUPT_EXIT_CODE)

    signal.signal(signal.SIGINT, _handle_interrupt)
    atexit.register(registry.run)
