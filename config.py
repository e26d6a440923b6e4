"""Simple JSON-based config store."""

from __future__ import annotations

import json
import os
from pathlib import Path

from models import CaptureConfig

DEFAULT_HOTKEY = "Key.f9"
DEFAULT_LOCALE = "pt-BR"
DEFAULT_AGENT_URI = "ws://127.0.0.1:5111"

_CAPTURE_FIELDS = (
    "silence_timeout_ms",
    "max_duration_ms",
    "auto_restart",
    "max_retries",
    "retry_delay_ms",
    "max_restarts",
    "restart_base_ms",
    "restart_max_backoff_ms",
)


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "kaia" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key") or os.getenv("DASHSCOPE_API_KEY", ""))

    def set_api_key(self, key: str) -> None:
        self._set("api_key", key)

    def get_hotkey(self) -> str:
        data = self._read_all()
        return str(data.get("hotkey", DEFAULT_HOTKEY))

    def set_hotkey(self, hotkey: str) -> None:
        self._set("hotkey", hotkey)

    def get_locale(self) -> str:
        data = self._read_all()
        return str(data.get("locale") or DEFAULT_LOCALE)

    def set_locale(self, locale: str) -> None:
        self._set("locale", locale)

    def get_agent_uri(self) -> str:
        data = self._read_all()
        return str(data.get("agent_uri") or DEFAULT_AGENT_URI)

    def set_agent_uri(self, uri: str) -> None:
        self._set("agent_uri", uri)

    def get_execution_enabled(self) -> bool:
        data = self._read_all()
        return data.get("execution_enabled", False) is True

    def set_execution_enabled(self, enabled: bool) -> None:
        self._set("execution_enabled", bool(enabled))

    def get_capture_config(self) -> CaptureConfig:
        data = self._read_all()
        capture = data.get("capture")
        defaults = CaptureConfig(locale=self.get_locale())
        if not isinstance(capture, dict):
            return defaults
        overrides = {}
        for name in _CAPTURE_FIELDS:
            value = capture.get(name)
            expected = type(getattr(defaults, name))
            if isinstance(value, expected) and (expected is bool or not isinstance(value, bool)):
                overrides[name] = value
        return CaptureConfig(locale=defaults.locale, **overrides)

    def _set(self, name: str, value: object) -> None:
        data = self._read_all()
        data[name] = value
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
