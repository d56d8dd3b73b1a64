"""Terminal "thinking" indicator shown while waiting on the model."""

from __future__ import annotations

import sys
import threading
from typing import TextIO

FRAMES = ("|", "/", "-", "\\")
FRAME_INTERVAL = 0.12


class Spinner:
    """Animates on a daemon thread; ``stop`` blocks until the line is cleared."""

    def __init__(self, message: str = "Thinking...", *, stream: TextIO | None = None) -> None:
        self.message = message
        self.stream = stream or sys.stderr
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._thread is not None

    def start(self) -> None:
        if not _is_terminal(self.stream):
            return
        with self._lock:
            if self._thread is not None:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._spin, args=(self._stop_event,), daemon=True)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if thread is None or stop_event is None:
            return
        stop_event.set()
        thread.join()

    def _spin(self, stop_event: threading.Event) -> None:
        index = 0
        while not stop_event.is_set():
            self.stream.write(f"\r  {FRAMES[index % len(FRAMES)]} {self.message}")
            self.stream.flush()
            index += 1
            stop_event.wait(FRAME_INTERVAL)
        self.stream.write("\r\033[K")
        self.stream.flush()


def _is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())
