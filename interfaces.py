"""Protocol interfaces used by the capture pipeline and the execution agent."""

from __future__ import annotations

import asyncio
from queue import Queue
from typing import Callable, Optional, Protocol, Sequence

from models import AudioFrame, RecognitionEvent


class Recorder(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class RecognitionEngine(Protocol):
    def start(
        self,
        locale: str,
        on_event: Callable[[RecognitionEvent], None],
    ) -> None: ...

    def stop(self) -> None: ...


class MicrophoneProbe(Protocol):
    def probe(self) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class ShellLauncher(Protocol):
    def argv(self, command: str) -> Sequence[str]: ...

    async def spawn(
        self,
        command: str,
        cwd: Optional[str] = None,
    ) -> asyncio.subprocess.Process: ...

    def kill(self, process: asyncio.subprocess.Process) -> None: ...
