"""Kaia desktop entrypoint: tray icon, live transcript and voice commands."""

from __future__ import annotations

import logging
import os
import sys
import threading

from config import JsonConfigStore
from dispatcher import CommandDispatcher
from hotkey import ToggleHotkey
from models import CaptureState, PermissionState
from overlay import CommandOutputWindow, OverlayWindow
from permission import PermissionGate
from protocol import CommandRequest
from recognizer import DashscopeRecognitionEngine
from recorder import default_probe
from relay_client import BackgroundRelay, CommandOutputBuffer, CommandRelayClient
from scheduler import ThreadingScheduler
from speech_capture import SpeechCapture

try:
    from PySide6.QtCore import QObject, Signal, QSize
    from PySide6.QtGui import QAction, QIcon, QPixmap, QPainter, QColor, QBrush
    from PySide6.QtWidgets import QApplication, QInputDialog, QMenu, QMessageBox, QSystemTrayIcon
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

log = logging.getLogger(__name__)


def _setup_logging() -> None:
    level = os.getenv("KAIA_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _create_icon(color: str = "#888888", size: int = 22) -> QIcon:
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


ICON_IDLE = "#888888"       # grey
ICON_LISTENING = "#FF4444"  # red
ICON_RETRYING = "#FF8800"   # orange
ICON_BLOCKED = "#555555"    # dark grey


class UIBridge(QObject):
    transcript_signal = Signal(str)
    error_signal = Signal(str)
    state_signal = Signal(str, str)  # from_state, to_state
    permission_signal = Signal(str)
    command_signal = Signal(str)
    output_signal = Signal(str)


class App:
    def __init__(self) -> None:
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        self.overlay = OverlayWindow()
        self.output_window = CommandOutputWindow()

        self.ui = UIBridge()
        self.ui.transcript_signal.connect(self._on_transcript_ui)
        self.ui.error_signal.connect(self._on_error_ui)
        self.ui.state_signal.connect(self._on_state_change_ui)
        self.ui.permission_signal.connect(self._on_permission_ui)
        self.ui.command_signal.connect(self._on_command_ui)
        self.ui.output_signal.connect(self.output_window.append_text)

        self.gate = PermissionGate(
            default_probe(),
            on_granted=self._on_permission_granted,
            on_status_change=lambda status: self.ui.permission_signal.emit(status.value),
        )
        self.engine = DashscopeRecognitionEngine(api_key=self.config_store.get_api_key())
        self.capture = SpeechCapture(
            engine=self.engine if self.gate.supported else None,
            scheduler=ThreadingScheduler(),
            config=self.config_store.get_capture_config(),
            permission=self.gate,
            on_state_change=lambda a, b: self.ui.state_signal.emit(a.value, b.value),
            on_transcript=self.ui.transcript_signal.emit,
            on_error=lambda code, message: self.ui.error_signal.emit(f"{code}: {message}"),
            on_silence=self._on_silence,
        )

        self.output_buffer = CommandOutputBuffer(on_change=self.ui.output_signal.emit)
        self.relay = BackgroundRelay(
            CommandRelayClient(self.config_store.get_agent_uri(), buffer=self.output_buffer)
        )
        self.dispatcher = CommandDispatcher(send=self._send_request)
        self._execution_enabled = self.config_store.get_execution_enabled()
        self.hotkey = ToggleHotkey(hotkey_name=self.config_store.get_hotkey())

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(ICON_IDLE))
        self.tray.setToolTip("Kaia - Ready")
        self._setup_menu()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()

        self.listen_action = QAction("Start listening", menu)
        self.listen_action.triggered.connect(self._toggle_listening)
        menu.addAction(self.listen_action)

        self.execution_action = QAction("Enable command execution", menu)
        self.execution_action.setCheckable(True)
        self.execution_action.setChecked(self._execution_enabled)
        self.execution_action.toggled.connect(self._set_execution_enabled)
        menu.addAction(self.execution_action)

        output_action = QAction("Show command output", menu)
        output_action.triggered.connect(self.output_window.show)
        menu.addAction(output_action)

        menu.addSeparator()
        api_action = QAction("Set API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        hotkey_action = QAction("Set Hotkey", menu)
        hotkey_action.triggered.connect(self._set_hotkey)
        menu.addAction(hotkey_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(None, "API Key", "DashScope API Key")
        if not ok:
            return
        self.config_store.set_api_key(value)
        self.engine.set_api_key(value)
        QMessageBox.information(None, "Saved", "API Key saved and applied.")

    def _set_hotkey(self) -> None:
        value, ok = QInputDialog.getText(
            None, "Hotkey", "Use pynput key format, e.g. Key.f9"
        )
        if not ok or not value:
            return
        self.config_store.set_hotkey(value)
        QMessageBox.information(None, "Saved", "Hotkey saved. Restart app to apply.")

    def _set_execution_enabled(self, enabled: bool) -> None:
        self._execution_enabled = enabled
        self.config_store.set_execution_enabled(enabled)
        if enabled:
            self._connect_agent()
        else:
            threading.Thread(target=self.relay.stop, daemon=True).start()

    # ------------------------------------------------------------------
    # Callbacks (called from worker threads → emit signals for UI thread)
    # ------------------------------------------------------------------

    def _on_permission_granted(self) -> None:
        log.info("Microphone granted, starting to listen")
        self.capture.start()

    def _on_silence(self, final_transcript: str) -> None:
        if not self._execution_enabled:
            return
        command = self.dispatcher.extract_new_command(final_transcript)
        if command:
            self.ui.command_signal.emit(command)

    def _send_request(self, request: CommandRequest) -> None:
        future = self.relay.submit(request)

        def _done(fut) -> None:
            if fut.exception() is not None:
                log.error("[%s] relay failed: %s", request.id, fut.exception())
            elif not fut.result():
                self.ui.error_signal.emit("Command not sent: agent is not connected")

        future.add_done_callback(_done)

    def _connect_agent(self) -> None:
        def _run() -> None:
            if not self.relay.connect():
                self.ui.error_signal.emit("Agent unreachable; start kaia-agent first")

        threading.Thread(target=_run, daemon=True).start()

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_transcript_ui(self, text: str) -> None:
        if self.capture.listening:
            self.overlay.set_text(text or "🎙️ Listening...")

    def _on_error_ui(self, msg: str) -> None:
        self.overlay.show_error(msg)

    def _on_command_ui(self, command: str) -> None:
        answer = QMessageBox.question(None, "Kaia", f"Run this command?\n\n{command}")
        request = self.dispatcher.submit(command, answer == QMessageBox.Yes)
        if request is not None:
            self.output_window.show()

    def _on_permission_ui(self, status: str) -> None:
        self.overlay.set_status(f"microphone: {status}")
        if status in (PermissionState.DENIED.value, PermissionState.UNAVAILABLE.value):
            self.tray.setIcon(_create_icon(ICON_BLOCKED))
            self.tray.setToolTip(f"Kaia - Microphone {status}")
            self.overlay.show_error(f"Microphone {status}")

    def _on_state_change_ui(self, from_state: str, to_state: str) -> None:
        if to_state == CaptureState.LISTENING.value:
            self.tray.setIcon(_create_icon(ICON_LISTENING))
            self.tray.setToolTip("Kaia - Listening...")
            self.listen_action.setText("Stop listening")
            if from_state == CaptureState.IDLE.value:
                self.dispatcher.reset()
                self.overlay.set_text("🎙️ Listening...")
        elif to_state == CaptureState.FINALIZING.value:
            self.tray.setToolTip("Kaia - Processing...")
        elif to_state == CaptureState.RETRYING.value:
            self.tray.setIcon(_create_icon(ICON_RETRYING))
            self.tray.setToolTip("Kaia - Reconnecting...")
        elif to_state == CaptureState.IDLE.value:
            self.tray.setIcon(_create_icon(ICON_IDLE))
            self.tray.setToolTip("Kaia - Ready")
            self.listen_action.setText("Start listening")
            self.overlay.hide_with_delay(1500)

    # ------------------------------------------------------------------
    # Hotkey handlers
    # ------------------------------------------------------------------

    def _toggle_listening(self) -> None:
        if self.capture.listening:
            self.capture.stop()
            return
        threading.Thread(target=self._start_listening, daemon=True).start()

    def _start_listening(self) -> None:
        if self.capture.permission_status != PermissionState.GRANTED:
            self.capture.request_permission()
        self.capture.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        try:
            self.hotkey.start(on_toggle=self._toggle_listening)
        except Exception as exc:
            self.overlay.show_error(f"Hotkey disabled: {exc}")
        threading.Thread(target=self.gate.check, daemon=True).start()
        if self._execution_enabled:
            self._connect_agent()
        return self.app.exec()

    def quit(self) -> None:
        self.hotkey.stop()
        self.capture.close()
        self.relay.stop()
        self.app.quit()


def main() -> int:
    _setup_logging()
    app = App()
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
