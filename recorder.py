"""Microphone recorder and access probe on top of sounddevice."""

from __future__ import annotations

import logging
import threading
import time
from queue import Full, Queue
from typing import Any, Optional

from errors import MicrophoneDenied, MicrophoneNotFound
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

log = logging.getLogger(__name__)

_DENIED_MARKERS = ("permission", "denied", "not allowed", "not authorized")


def frame_level(pcm16_bytes: bytes) -> float:
    """Root-mean-square amplitude of a 16-bit PCM frame."""
    if np is None or not pcm16_bytes:
        return 0.0
    samples = np.frombuffer(pcm16_bytes, dtype=np.int16).astype(np.float64)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples ** 2)))


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
        device: Optional[int] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.device = device
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self.dropped_chunks = 0
        self._audio_queue: Queue[AudioFrame | None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._audio_queue = audio_queue
            self.dropped_chunks = 0
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.chunk_ms / 1000),
                device=self.device,
                callback=self._on_audio,
            )
            self._stream.start()
            self._running = True
            log.debug("Recorder started (%d Hz, %d ms chunks)", self.sample_rate, self.chunk_ms)

    def stop(self) -> None:
        with self._lock:
            if self._running:
                self._running = False
                if self._stream is not None:
                    self._stream.stop()
                    self._stream.close()
                    self._stream = None
                if self.dropped_chunks:
                    log.warning("Recorder dropped %d chunks", self.dropped_chunks)
            self._push_sentinel()

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._audio_queue is None or np is None:
            return
        if status:
            log.debug("Input stream status: %s", status)
        frame = AudioFrame(
            pcm16_bytes=np.asarray(indata, dtype=np.int16).tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            self._audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    def _push_sentinel(self) -> None:
        if self._audio_queue is None:
            return
        try:
            self._audio_queue.put_nowait(None)
        except Full:
            pass


class SoundDeviceProbe:
    """Checks that an input device exists and can actually be opened."""

    def __init__(self, sample_rate: int = 16000, device: Optional[int] = None) -> None:
        self.sample_rate = sample_rate
        self.device = device

    def probe(self) -> None:
        if sd is None:
            raise MicrophoneNotFound("sounddevice is not installed")
        try:
            sd.query_devices(self.device, kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            raise MicrophoneNotFound(str(exc)) from exc
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                device=self.device,
            )
            stream.start()
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            message = str(exc)
            if any(marker in message.lower() for marker in _DENIED_MARKERS):
                raise MicrophoneDenied(message) from exc
            raise


def default_probe() -> Optional[SoundDeviceProbe]:
    """Probe for this runtime, or None when no capture API is available."""
    if sd is None:
        return None
    return SoundDeviceProbe()
