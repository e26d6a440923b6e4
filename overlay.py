"""Qt windows: transcript overlay and command output."""

from __future__ import annotations

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtGui import QFont, QTextCursor
    from PySide6.QtWidgets import (
        QApplication,
        QHBoxLayout,
        QLabel,
        QPlainTextEdit,
        QPushButton,
        QVBoxLayout,
        QWidget,
    )
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QFont = None  # type: ignore
    QTextCursor = None  # type: ignore
    QApplication = None  # type: ignore
    QHBoxLayout = object  # type: ignore
    QLabel = object  # type: ignore
    QPlainTextEdit = object  # type: ignore
    QPushButton = object  # type: ignore
    QVBoxLayout = object  # type: ignore
    QWidget = object  # type: ignore

_LABEL_STYLE = (
    "color: {color}; font-size: 18px; padding: 16px;"
    "background: rgba(0,0,0,{alpha}); border-radius: 12px;"
)


class OverlayWindow(QWidget):
    """Frameless top-center window showing the live transcript."""

    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(
            Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool
        )
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setFixedWidth(640)

        self._status = QLabel("")
        self._status.setStyleSheet("color: #BBBBBB; font-size: 12px; padding: 0 16px;")
        self._label = QLabel("")
        self._label.setWordWrap(True)
        self._reset_style()

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.addWidget(self._label)
        layout.addWidget(self._status)
        self.setLayout(layout)

        self._hide_timer: QTimer | None = None

    def _center_top(self) -> None:
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40
        self.move(x, y)

    def set_text(self, text: str) -> None:
        """Show the transcript at the top center of the screen."""
        self._cancel_hide_timer()
        self._reset_style()
        self._label.setText(text)
        self._center_top()
        self.show()

    def set_status(self, text: str) -> None:
        self._status.setText(text)

    def hide_with_delay(self, delay_ms: int = 400) -> None:
        self._cancel_hide_timer()
        if QTimer is not None:
            self._hide_timer = QTimer()
            self._hide_timer.setSingleShot(True)
            self._hide_timer.timeout.connect(self.hide)
            self._hide_timer.start(delay_ms)

    def show_error(self, text: str, hide_after_ms: int = 3000) -> None:
        self._cancel_hide_timer()
        self._label.setStyleSheet(_LABEL_STYLE.format(color="#FF6B6B", alpha=210))
        self._label.setText(f"⚠️ {text}")
        self._center_top()
        self.show()
        self.hide_with_delay(hide_after_ms)

    def _cancel_hide_timer(self) -> None:
        if self._hide_timer is not None:
            self._hide_timer.stop()
            self._hide_timer = None

    def _reset_style(self) -> None:
        self._label.setStyleSheet(_LABEL_STYLE.format(color="white", alpha=190))


class CommandOutputWindow(QWidget):
    """Scrolling view of the command relay output buffer."""

    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowTitle("Kaia - Command output")
        self.resize(720, 420)

        self._view = QPlainTextEdit()
        self._view.setReadOnly(True)
        self._view.setFont(QFont("monospace"))
        self._view.setStyleSheet("background: #111111; color: #DDDDDD;")

        clear_button = QPushButton("Clear")
        clear_button.clicked.connect(self.clear)
        buttons = QHBoxLayout()
        buttons.addStretch(1)
        buttons.addWidget(clear_button)

        layout = QVBoxLayout()
        layout.addWidget(self._view)
        layout.addLayout(buttons)
        self.setLayout(layout)

    def append_text(self, text: str) -> None:
        """Append raw output; chunks are not line-aligned."""
        cursor = self._view.textCursor()
        cursor.movePosition(QTextCursor.End)
        cursor.insertText(text)
        self._view.setTextCursor(cursor)
        self._view.ensureCursorVisible()

    def set_text(self, text: str) -> None:
        self._view.setPlainText(text)

    def clear(self) -> None:
        self._view.clear()
