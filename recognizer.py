"""Continuous recognition engine using DashScope qwen3-asr-flash.

qwen3-asr-flash transcribes complete audio clips, so continuity is built
locally: the microphone is read frame by frame, a simple energy detector
splits speech into utterances at pauses, and every utterance is sent to the
model with ``stream=True``. Streamed chunks become interim segments; the last
chunk of an utterance becomes a final segment. Each RESULT event carries
every segment of the current pass, final ones first, the way browser
recognizers report their result list.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import wave
from queue import Empty, Queue
from typing import Callable, List, Optional

from errors import (
    AUDIO_CAPTURE,
    LANGUAGE_NOT_SUPPORTED,
    NETWORK,
    NO_SPEECH,
    SERVICE_NOT_ALLOWED,
    UNKNOWN,
)
from interfaces import Recorder
from models import (
    AudioFrame,
    RecognitionEvent,
    RecognitionKind,
    RecognitionSegment,
    SpeechErrorCode,
)
from recorder import SoundDeviceRecorder, frame_level

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

log = logging.getLogger(__name__)


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _frame_duration_ms(frame: AudioFrame) -> float:
    samples = len(frame.pcm16_bytes) / (2 * max(frame.channels, 1))
    return samples * 1000.0 / max(frame.sample_rate, 1)


class DashscopeRecognitionEngine:
    def __init__(
        self,
        api_key: str,
        recorder: Optional[Recorder] = None,
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
        speech_threshold: float = 500.0,
        pause_ms: int = 700,
        no_speech_timeout_ms: int = 8000,
        queue_maxsize: int = 200,
    ) -> None:
        self._api_key = api_key
        self._recorder = recorder or SoundDeviceRecorder()
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._speech_threshold = speech_threshold
        self._pause_ms = pause_ms
        self._no_speech_timeout_ms = no_speech_timeout_ms
        self._queue_maxsize = queue_maxsize

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._on_event: Optional[Callable[[RecognitionEvent], None]] = None
        self._locale = "pt-BR"

    def start(
        self,
        locale: str,
        on_event: Callable[[RecognitionEvent], None],
    ) -> None:
        thread = self._thread
        if thread is not None and thread.is_alive() and not self._stop_event.is_set():
            return
        self._locale = locale
        self._on_event = on_event
        # Each worker owns its stop event and queue; an old worker that is
        # still draining a request never sees the new pass.
        stop_event = threading.Event()
        audio_queue: Queue[AudioFrame | None] = Queue(maxsize=self._queue_maxsize)
        self._stop_event = stop_event
        self._audio_queue = audio_queue
        self._thread = threading.Thread(
            target=self._worker,
            args=(stop_event, audio_queue, locale),
            daemon=True,
        )
        self._thread.start()

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key

    def stop(self) -> None:
        # Never joins; the worker may be blocked delivering to the caller.
        self._stop_event.set()
        self._safe_stop_recorder()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(
        self,
        stop_event: threading.Event,
        audio_queue: Queue[AudioFrame | None],
        locale: str,
    ) -> None:
        try:
            self._recorder.start(audio_queue)
        except Exception as exc:
            self._emit_error(stop_event, AUDIO_CAPTURE, f"microphone unavailable: {exc}")
            self._emit(stop_event, RecognitionEvent(kind=RecognitionKind.END))
            return
        try:
            self._listen(stop_event, audio_queue, locale)
        finally:
            if stop_event is self._stop_event:
                self._safe_stop_recorder()
            self._emit(stop_event, RecognitionEvent(kind=RecognitionKind.END))

    def _listen(  # noqa: C901
        self,
        stop_event: threading.Event,
        audio_queue: Queue[AudioFrame | None],
        locale: str,
    ) -> None:
        finals: List[RecognitionSegment] = []
        utterance = bytearray()
        sample_rate = 16000
        channels = 1
        in_speech = False
        heard_speech = False
        silence_ms = 0.0
        quiet_ms = 0.0

        while not stop_event.is_set():
            try:
                frame = audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                break
            sample_rate = frame.sample_rate
            channels = frame.channels
            duration_ms = _frame_duration_ms(frame)

            if frame_level(frame.pcm16_bytes) >= self._speech_threshold:
                if not in_speech:
                    in_speech = True
                    heard_speech = True
                    self._emit(stop_event, RecognitionEvent(kind=RecognitionKind.SPEECH_START))
                silence_ms = 0.0
                utterance.extend(frame.pcm16_bytes)
            elif in_speech:
                utterance.extend(frame.pcm16_bytes)
                silence_ms += duration_ms
                if silence_ms >= self._pause_ms:
                    if not self._recognize(stop_event, locale, bytes(utterance), sample_rate, channels, finals):
                        return
                    utterance.clear()
                    in_speech = False
                    silence_ms = 0.0
            elif not heard_speech and self._no_speech_timeout_ms > 0:
                quiet_ms += duration_ms
                if quiet_ms >= self._no_speech_timeout_ms:
                    self._emit_error(stop_event, NO_SPEECH, "no speech detected")
                    return

        if utterance and not stop_event.is_set():
            self._recognize(stop_event, locale, bytes(utterance), sample_rate, channels, finals)

    def _recognize(
        self,
        stop_event: threading.Event,
        locale: str,
        pcm: bytes,
        sample_rate: int,
        channels: int,
        finals: List[RecognitionSegment],
    ) -> bool:
        """Transcribe one utterance; False means the pass must end."""
        if dashscope is None:
            self._emit_error(stop_event, SERVICE_NOT_ALLOWED, "dashscope is not installed")
            return False
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            self._emit_error(stop_event, SERVICE_NOT_ALLOWED, "No API key configured")
            return False

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": _pcm_to_wav_base64(pcm, sample_rate, channels)}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False, "language": locale.split("-")[0]},
                stream=True,
                timeout=self._request_timeout_s,
            )
        except Exception as exc:
            self._emit_exception(stop_event, exc)
            return False

        latest_text = ""
        try:
            for chunk in response:
                if stop_event.is_set():
                    return False
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
                    interim = RecognitionSegment(text=text, is_final=False)
                    self._emit(
                        stop_event,
                        RecognitionEvent(kind=RecognitionKind.RESULT, segments=finals + [interim]),
                    )
        except Exception as exc:
            self._emit_exception(stop_event, exc)
            return False

        if latest_text.strip():
            # qwen3-asr-flash does not report a confidence score.
            finals.append(RecognitionSegment(text=latest_text.strip(), is_final=True))
            self._emit(stop_event, RecognitionEvent(kind=RecognitionKind.RESULT, segments=list(finals)))
        return True

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            output = chunk.get("output", {})
            choices = output.get("choices", [])
            if not choices:
                return ""
            message = choices[0].get("message", {})
            content = message.get("content", [])
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""

    def _emit_exception(self, stop_event: threading.Event, exc: Exception) -> None:
        """Map an SDK/network exception onto the recognition error taxonomy."""
        message = str(exc)
        low = message.lower()
        if "401" in low or "403" in low or "auth" in low or "api key" in low:
            code = SERVICE_NOT_ALLOWED
        elif "language" in low:
            code = LANGUAGE_NOT_SUPPORTED
        elif isinstance(exc, (ConnectionError, TimeoutError)) or any(
            marker in low for marker in ("timeout", "timed out", "network", "connection")
        ):
            code = NETWORK
        else:
            code = UNKNOWN
        self._emit_error(stop_event, code, message)

    def _emit_error(self, stop_event: threading.Event, code: SpeechErrorCode, message: str) -> None:
        log.debug("Engine error %s: %s", code.value, message)
        self._emit(stop_event, RecognitionEvent(kind=RecognitionKind.ERROR, code=code.value, message=message))

    def _emit(self, stop_event: threading.Event, event: RecognitionEvent) -> None:
        if stop_event is not self._stop_event:
            log.debug("Dropped %s from a superseded worker", event.kind.value)
            return
        if self._on_event is not None:
            self._on_event(event)

    def _safe_stop_recorder(self) -> None:
        try:
            self._recorder.stop()
        except Exception as exc:
            log.debug("Recorder stop failed: %s", exc)
