"""Core data models for the capture pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class CaptureState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"
    RETRYING = "retrying"


class PermissionState(str, Enum):
    CHECKING = "checking"
    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


class SpeechErrorCode(str, Enum):
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    NOT_ALLOWED = "not-allowed"
    NETWORK = "network"
    ABORTED = "aborted"
    LANGUAGE_NOT_SUPPORTED = "language-not-supported"
    SERVICE_NOT_ALLOWED = "service-not-allowed"
    UNKNOWN = "unknown"


class RecognitionKind(str, Enum):
    RESULT = "result"
    ERROR = "error"
    END = "end"
    SPEECH_START = "speech-start"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass(frozen=True)
class RecognitionSegment:
    """One buffered result of an engine pass, final or still provisional."""

    text: str
    is_final: bool
    confidence: float = 0.0


@dataclass
class RecognitionEvent:
    kind: RecognitionKind
    segments: List[RecognitionSegment] = field(default_factory=list)
    code: str = ""
    message: str = ""


@dataclass(frozen=True)
class SpeechError:
    code: SpeechErrorCode
    message: str
    recoverable: bool


@dataclass
class CaptureConfig:
    locale: str = "pt-BR"
    silence_timeout_ms: int = 1500
    max_duration_ms: int = 30000
    auto_restart: bool = True
    max_retries: int = 3
    retry_delay_ms: int = 500
    max_restarts: int = 10
    restart_base_ms: int = 100
    restart_max_backoff_ms: int = 5000


@dataclass
class RecognitionSession:
    """Mutable state of one continuous listening session."""

    state: CaptureState = CaptureState.IDLE
    committed_transcript: str = ""
    pass_final_transcript: str = ""
    interim_transcript: str = ""
    confidence: float = 0.0
    retry_count: int = 0
    restart_count: int = 0
    backoff_ms: int = 100
    last_speech_at: Optional[float] = None

    @property
    def final_transcript(self) -> str:
        return self.committed_transcript + self.pass_final_transcript

    @property
    def transcript(self) -> str:
        return (self.final_transcript + self.interim_transcript).strip()

    def commit_pass(self) -> None:
        """Fold the finished engine pass into the committed prefix."""
        self.committed_transcript += self.pass_final_transcript
        self.pass_final_transcript = ""
        self.interim_transcript = ""
