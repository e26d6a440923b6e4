"""Tests for DashscopeRecognitionEngine."""

from __future__ import annotations

import base64
import threading
import time
from queue import Queue
from typing import List, Optional
from unittest.mock import MagicMock, patch

from models import AudioFrame, RecognitionEvent, RecognitionKind
from recognizer import DashscopeRecognitionEngine, _pcm_to_wav_base64


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _loud_frame(n_samples: int = 1600) -> AudioFrame:
    return AudioFrame(pcm16_bytes=(3000).to_bytes(2, "little", signed=True) * n_samples)


def _quiet_frame(n_samples: int = 1600) -> AudioFrame:
    return AudioFrame(pcm16_bytes=b"\x00\x00" * n_samples)


class FakeRecorder:
    """Feeds a fixed list of frames, then the end-of-stream sentinel."""

    def __init__(self, frames: List[AudioFrame], fail: Optional[Exception] = None) -> None:
        self.frames = frames
        self.fail = fail
        self.started = 0
        self.stopped = 0

    def start(self, audio_queue: Queue) -> None:
        if self.fail is not None:
            raise self.fail
        self.started += 1
        for frame in self.frames:
            audio_queue.put(frame)
        audio_queue.put(None)

    def stop(self) -> None:
        self.stopped += 1


def _chunk(text: str) -> dict:
    return {"output": {"choices": [{"message": {"content": [{"text": text}]}}]}}


def _run(engine: DashscopeRecognitionEngine, locale: str = "pt-BR", timeout: float = 3.0) -> List[RecognitionEvent]:
    events: List[RecognitionEvent] = []
    engine.start(locale, events.append)
    deadline = time.time() + timeout
    while time.time() < deadline:
        if any(e.kind == RecognitionKind.END for e in events):
            break
        time.sleep(0.02)
    engine.stop()
    return events


def _kinds(events: List[RecognitionEvent]) -> List[RecognitionKind]:
    return [e.kind for e in events]


# ---------------------------------------------------------------
# _pcm_to_wav_base64
# ---------------------------------------------------------------

def test_pcm_to_wav_base64_produces_riff() -> None:
    result = _pcm_to_wav_base64(b"\x00\x00" * 1600, sample_rate=16000, channels=1)
    assert base64.b64decode(result)[:4] == b"RIFF"


# ---------------------------------------------------------------
# Streaming recognition
# ---------------------------------------------------------------

@patch("recognizer.dashscope")
def test_utterance_emits_interim_then_final_segments(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.return_value = iter(
        [_chunk("abre"), _chunk("abre o"), _chunk("abre o bloco")]
    )
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([_loud_frame(), _loud_frame()]))

    events = _run(engine)

    assert _kinds(events)[0] == RecognitionKind.SPEECH_START
    assert _kinds(events)[-1] == RecognitionKind.END
    results = [e for e in events if e.kind == RecognitionKind.RESULT]
    assert [seg.is_final for seg in results[0].segments] == [False]
    assert results[0].segments[0].text == "abre"
    assert len(results[-1].segments) == 1
    assert results[-1].segments[0].is_final
    assert results[-1].segments[0].text == "abre o bloco"

    kwargs = mock_ds.MultiModalConversation.call.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["asr_options"]["language"] == "pt"


@patch("recognizer.dashscope")
def test_pause_splits_utterances_and_keeps_earlier_finals(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.side_effect = [
        iter([_chunk("kaia")]),
        iter([_chunk("execute dir")]),
    ]
    frames = [_loud_frame()] + [_quiet_frame()] * 8 + [_loud_frame()]
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder(frames), pause_ms=700)

    events = _run(engine)

    assert _kinds(events).count(RecognitionKind.SPEECH_START) == 2
    last = [e for e in events if e.kind == RecognitionKind.RESULT][-1]
    assert [seg.text for seg in last.segments] == ["kaia", "execute dir"]
    assert all(seg.is_final for seg in last.segments)


# ---------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------

def test_quiet_pass_reports_no_speech() -> None:
    engine = DashscopeRecognitionEngine(
        api_key="k",
        recorder=FakeRecorder([_quiet_frame()] * 5),
        no_speech_timeout_ms=300,
    )

    events = _run(engine)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR]
    assert [e.code for e in errors] == ["no-speech"]
    assert _kinds(events)[-1] == RecognitionKind.END


def test_recorder_failure_reports_audio_capture() -> None:
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([], fail=RuntimeError("busy")))

    events = _run(engine)

    assert _kinds(events) == [RecognitionKind.ERROR, RecognitionKind.END]
    assert events[0].code == "audio-capture"


@patch("recognizer.dashscope", MagicMock())
@patch.dict("os.environ", {"DASHSCOPE_API_KEY": ""}, clear=False)
def test_missing_api_key_reports_service_not_allowed() -> None:
    engine = DashscopeRecognitionEngine(api_key="", recorder=FakeRecorder([_loud_frame()]))

    events = _run(engine)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR]
    assert errors[0].code == "service-not-allowed"


@patch("recognizer.dashscope")
def test_connection_error_maps_to_network(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.side_effect = ConnectionError("connection reset")
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([_loud_frame()]))

    events = _run(engine)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR]
    assert [e.code for e in errors] == ["network"]


@patch("recognizer.dashscope")
def test_auth_failure_maps_to_service_not_allowed(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.side_effect = RuntimeError("401 Unauthorized: invalid api key")
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([_loud_frame()]))

    events = _run(engine)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR]
    assert errors[0].code == "service-not-allowed"


@patch("recognizer.dashscope")
def test_unexpected_failure_maps_to_unknown(mock_ds: MagicMock) -> None:
    mock_ds.MultiModalConversation.call.side_effect = RuntimeError("boom")
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([_loud_frame()]))

    events = _run(engine)

    errors = [e for e in events if e.kind == RecognitionKind.ERROR]
    assert errors[0].code == "unknown"
    assert errors[0].message == "boom"


# ---------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------

def test_stop_stops_recorder() -> None:
    recorder = FakeRecorder([])
    engine = DashscopeRecognitionEngine(api_key="k", recorder=recorder, no_speech_timeout_ms=0)

    events = _run(engine)

    assert recorder.stopped >= 1
    assert _kinds(events) == [RecognitionKind.END]


@patch("recognizer.dashscope")
def test_restart_while_request_in_flight_drops_old_worker(mock_ds: MagicMock) -> None:
    entered = threading.Event()
    release = threading.Event()
    calls: List[int] = []

    def call(**kwargs):  # noqa: ANN003, ANN202
        calls.append(1)
        if len(calls) == 1:
            entered.set()
            release.wait(timeout=5.0)
            return iter([_chunk("old pass")])
        return iter([_chunk("new pass")])

    mock_ds.MultiModalConversation.call.side_effect = call
    engine = DashscopeRecognitionEngine(api_key="k", recorder=FakeRecorder([_loud_frame()]))

    first: List[RecognitionEvent] = []
    engine.start("pt-BR", first.append)
    assert entered.wait(timeout=2.0)
    old_thread = engine._thread
    engine.stop()

    second: List[RecognitionEvent] = []
    engine.start("pt-BR", second.append)
    deadline = time.time() + 3.0
    while time.time() < deadline and RecognitionKind.END not in _kinds(second):
        time.sleep(0.02)
    release.set()
    old_thread.join(timeout=2.0)
    engine.stop()

    assert not old_thread.is_alive()
    assert engine._thread is not old_thread
    texts = [seg.text for e in second if e.kind == RecognitionKind.RESULT for seg in e.segments]
    assert "new pass" in texts
    assert "old pass" not in texts
    assert _kinds(second).count(RecognitionKind.END) == 1
    assert RecognitionKind.END not in _kinds(first)
