"""One-shot timers backed by threading.Timer."""

from __future__ import annotations

import threading
from typing import Callable


class ThreadingTimerHandle:
    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler:
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> ThreadingTimerHandle:
        timer = threading.Timer(max(delay_s, 0.0), callback)
        timer.daemon = True
        timer.start()
        return ThreadingTimerHandle(timer)
