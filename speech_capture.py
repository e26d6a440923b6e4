"""State-machine based continuous speech capture.

``SpeechCapture`` owns one :class:`RecognitionSession` at a time and drives a
:class:`RecognitionEngine` through start/stop, bounded retry on recoverable
errors and auto-restart with exponential backoff when the engine ends a pass
on its own. Engine callbacks and timer callbacks arrive on worker threads;
every handler runs under one re-entrant lock, so a result-handling pass always
completes before the next one starts.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from errors import UNKNOWN, classify_error
from interfaces import RecognitionEngine, Scheduler, TimerHandle
from models import (
    CaptureConfig,
    CaptureState,
    PermissionState,
    RecognitionEvent,
    RecognitionKind,
    RecognitionSegment,
    RecognitionSession,
    SpeechError,
)
from permission import PermissionGate

log = logging.getLogger(__name__)

StateCallback = Callable[[CaptureState, CaptureState], None]
TranscriptCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
SilenceCallback = Callable[[str], None]

_SILENCE = "silence"
_MAX_DURATION = "max-duration"
_RETRY = "retry"
_RESTART = "restart"


def restart_backoff_ms(attempt: int, base_ms: float = 100, max_ms: float = 5000) -> float:
    """Delay before auto-restart number ``attempt`` (1-based)."""
    return min(base_ms * 1.5 ** (attempt - 1), max_ms)


class SpeechCapture:
    def __init__(
        self,
        engine: Optional[RecognitionEngine],
        scheduler: Scheduler,
        config: Optional[CaptureConfig] = None,
        permission: Optional[PermissionGate] = None,
        on_state_change: Optional[StateCallback] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_silence: Optional[SilenceCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self._config = config or CaptureConfig()
        self._permission = permission
        self._on_state_change = on_state_change
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._on_silence = on_silence
        self._clock = clock

        self._lock = threading.RLock()
        self._listening = False
        self._state = CaptureState.IDLE
        self._session = RecognitionSession(backoff_ms=self._config.restart_base_ms)
        self._last_error: Optional[SpeechError] = None
        self._timers: Dict[str, Tuple[object, TimerHandle]] = {}

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    @property
    def supported(self) -> bool:
        return self._engine is not None

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def session(self) -> RecognitionSession:
        return self._session

    @property
    def transcript(self) -> str:
        return self._session.transcript

    @property
    def final_transcript(self) -> str:
        return self._session.final_transcript

    @property
    def interim_transcript(self) -> str:
        return self._session.interim_transcript

    @property
    def confidence(self) -> float:
        return self._session.confidence

    @property
    def last_error(self) -> Optional[SpeechError]:
        return self._last_error

    @property
    def permission_status(self) -> PermissionState:
        if self._permission is None:
            return PermissionState.GRANTED if self.supported else PermissionState.UNAVAILABLE
        return self._permission.status

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._listening:
                return
            if self._engine is None:
                log.debug("start ignored: no recognition engine available")
                return
            if self.permission_status != PermissionState.GRANTED:
                log.info("start ignored: microphone permission is %s", self.permission_status.value)
                return

            self._cancel_timers()
            self._session = RecognitionSession(backoff_ms=self._config.restart_base_ms)
            self._last_error = None
            self._listening = True
            self._transition(CaptureState.LISTENING)
            self._publish_transcript()
            if self._config.max_duration_ms > 0:
                self._arm(_MAX_DURATION, self._config.max_duration_ms, self._on_max_duration)
            log.info("Listening started (locale=%s)", self._config.locale)
            self._start_engine()

    def stop(self) -> None:
        with self._lock:
            self._cancel_timers()
            if not self._listening:
                return
            # Cleared first so the END this produces is not auto-restarted.
            self._listening = False
            self._safe_stop_engine()
            self._transition(CaptureState.IDLE)
            log.info("Listening stopped")

    def request_permission(self) -> PermissionState:
        if self._permission is None:
            return self.permission_status
        return self._permission.request_permission()

    def clear_error(self) -> None:
        with self._lock:
            self._last_error = None
            self._session.retry_count = 0

    def close(self) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    def handle_event(self, event: RecognitionEvent) -> None:
        with self._lock:
            kind = event.kind
            if kind == RecognitionKind.RESULT:
                self._handle_result(event.segments)
            elif kind == RecognitionKind.SPEECH_START:
                self._handle_speech_start()
            elif kind == RecognitionKind.ERROR:
                self._handle_error(event.code, event.message)
            elif kind == RecognitionKind.END:
                self._handle_end()

    def _handle_result(self, segments: Sequence[RecognitionSegment]) -> None:
        if not self._listening:
            log.debug("Result dropped: not listening")
            return
        session = self._session
        session.last_speech_at = self._clock()

        final_text = ""
        interim_text = ""
        best_confidence = 0.0
        for segment in segments:
            if segment.is_final:
                final_text += segment.text + " "
                best_confidence = max(best_confidence, segment.confidence)
            else:
                interim_text += segment.text

        if final_text.startswith(session.pass_final_transcript):
            session.pass_final_transcript = final_text
        else:
            log.debug("Engine revised committed results; keeping previous final text")
        session.interim_transcript = interim_text
        session.confidence = max(session.confidence, best_confidence)

        if self._state == CaptureState.FINALIZING:
            self._transition(CaptureState.LISTENING)
        self._publish_transcript()

        if (final_text + interim_text).strip() and self._config.silence_timeout_ms > 0:
            self._arm(_SILENCE, self._config.silence_timeout_ms, self._on_silence_timeout)

    def _handle_speech_start(self) -> None:
        if not self._listening:
            return
        session = self._session
        session.last_speech_at = self._clock()
        session.retry_count = 0
        session.restart_count = 0
        session.backoff_ms = self._config.restart_base_ms
        self._last_error = None
        log.debug("User started speaking")

    def _handle_error(self, code: str, message: str) -> None:
        if not self._listening:
            log.debug("Recognition error %s ignored: not listening", code)
            return
        error = classify_error(code, message)
        self._last_error = error
        log.warning("Speech recognition error %s: %s", error.code.value, error.message)
        self._emit_error(error)

        session = self._session
        if error.recoverable:
            session.retry_count += 1
            if session.retry_count < self._config.max_retries:
                log.info("Retry attempt %d/%d", session.retry_count, self._config.max_retries)
                self._disarm(_SILENCE)
                self._disarm(_RESTART)
                self._transition(CaptureState.RETRYING)
                self._arm(_RETRY, self._config.retry_delay_ms, self._on_retry)
                return
            log.warning("Giving up after %d recoverable errors", session.retry_count)
        self._teardown()

    def _handle_end(self) -> None:
        self._disarm(_SILENCE)
        if not self._listening:
            log.debug("Recognition ended")
            return
        if _RETRY in self._timers or _RESTART in self._timers:
            log.debug("Recognition ended with a restart already pending")
            return

        session = self._session
        session.commit_pass()
        if self._config.auto_restart and session.restart_count < self._config.max_restarts:
            session.restart_count += 1
            delay_ms = restart_backoff_ms(
                session.restart_count,
                session.backoff_ms,
                self._config.restart_max_backoff_ms,
            )
            log.info(
                "Auto-restarting recognition (attempt %d/%d, delay: %d ms)",
                session.restart_count,
                self._config.max_restarts,
                round(delay_ms),
            )
            self._arm(_RESTART, delay_ms, self._on_restart)
            return

        if session.restart_count >= self._config.max_restarts:
            log.warning("Max auto-restarts reached, stopping")
        self._teardown()

    # ------------------------------------------------------------------
    # Timer callbacks (run under the lock)
    # ------------------------------------------------------------------

    def _on_silence_timeout(self) -> None:
        if not self._listening:
            return
        log.debug("Silence detected, finalizing speech")
        self._transition(CaptureState.FINALIZING)
        if self._on_silence:
            self._on_silence(self._session.final_transcript.strip())

    def _on_max_duration(self) -> None:
        if not self._listening:
            return
        log.info("Max duration reached, stopping recognition")
        self._teardown()

    def _on_retry(self) -> None:
        if not self._listening:
            return
        self._transition(CaptureState.LISTENING)
        self._restart_engine()

    def _on_restart(self) -> None:
        if not self._listening:
            return
        self._restart_engine()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _start_engine(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.start(self._config.locale, self.handle_event)
        except Exception as exc:
            error = classify_error(UNKNOWN.value, f"start failed: {exc}")
            self._last_error = error
            log.error("Recognition engine failed to start: %s", exc)
            self._emit_error(error)
            self._teardown()

    def _restart_engine(self) -> None:
        self._session.commit_pass()
        self._start_engine()

    def _teardown(self) -> None:
        self._listening = False
        self._cancel_timers()
        self._safe_stop_engine()
        self._transition(CaptureState.IDLE)

    def _safe_stop_engine(self) -> None:
        if self._engine is None:
            return
        try:
            self._engine.stop()
        except Exception as exc:
            log.debug("Engine stop failed: %s", exc)

    def _arm(self, name: str, delay_ms: float, callback: Callable[[], None]) -> None:
        self._disarm(name)
        token = object()

        def fire() -> None:
            with self._lock:
                current = self._timers.get(name)
                if current is None or current[0] is not token:
                    return
                del self._timers[name]
                callback()

        handle = self._scheduler.call_later(delay_ms / 1000.0, fire)
        self._timers[name] = (token, handle)

    def _disarm(self, name: str) -> None:
        entry = self._timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()

    def _cancel_timers(self) -> None:
        for name in list(self._timers):
            self._disarm(name)

    def _publish_transcript(self) -> None:
        if self._on_transcript:
            self._on_transcript(self._session.transcript)

    def _emit_error(self, error: SpeechError) -> None:
        if self._on_error:
            self._on_error(error.code.value, error.message)

    def _transition(self, to_state: CaptureState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        self._session.state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
