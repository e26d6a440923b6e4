"""Shared error codes, user-facing messages and probe failures."""

from __future__ import annotations

from models import SpeechError, SpeechErrorCode

NO_SPEECH = SpeechErrorCode.NO_SPEECH
AUDIO_CAPTURE = SpeechErrorCode.AUDIO_CAPTURE
NOT_ALLOWED = SpeechErrorCode.NOT_ALLOWED
NETWORK = SpeechErrorCode.NETWORK
ABORTED = SpeechErrorCode.ABORTED
LANGUAGE_NOT_SUPPORTED = SpeechErrorCode.LANGUAGE_NOT_SUPPORTED
SERVICE_NOT_ALLOWED = SpeechErrorCode.SERVICE_NOT_ALLOWED
UNKNOWN = SpeechErrorCode.UNKNOWN

ERROR_MESSAGES = {
    NO_SPEECH: "No speech detected. Try speaking louder or closer to the microphone.",
    AUDIO_CAPTURE: "Could not capture audio. Check that the microphone is connected.",
    NOT_ALLOWED: "Microphone permission was denied.",
    NETWORK: "Network error while processing speech. Check your connection.",
    ABORTED: "Speech recognition was aborted.",
    LANGUAGE_NOT_SUPPORTED: "The configured language is not supported by the recognizer.",
    SERVICE_NOT_ALLOWED: "Speech recognition service is not available.",
    UNKNOWN: "Unknown speech recognition error",
}

RECOVERABLE = {
    NO_SPEECH: True,
    AUDIO_CAPTURE: True,
    NOT_ALLOWED: False,
    NETWORK: True,
    ABORTED: True,
    LANGUAGE_NOT_SUPPORTED: False,
    SERVICE_NOT_ALLOWED: False,
    UNKNOWN: True,
}


def classify_error(code: str, detail: str = "") -> SpeechError:
    """Map a raw engine error code onto the fixed taxonomy."""
    try:
        known = SpeechErrorCode(code)
    except ValueError:
        known = UNKNOWN
    message = ERROR_MESSAGES[known]
    if known is UNKNOWN:
        message = f"{message}: {detail or code or 'unspecified'}"
    return SpeechError(code=known, message=message, recoverable=RECOVERABLE[known])


class MicrophoneProbeError(Exception):
    """Base class for microphone access probe failures."""


class MicrophoneDenied(MicrophoneProbeError):
    """The user or the OS refused microphone access."""


class MicrophoneNotFound(MicrophoneProbeError):
    """No capture device is present."""
