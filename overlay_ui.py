from __future__ import annotations

from collections import deque
from typing import Optional

from PyQt6.QtCore import QPoint, Qt, pyqtSignal
from PyQt6.QtGui import QFont, QTextCursor
from PyQt6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QFrame,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QPushButton,
    QSizeGrip,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from channel_config import STREAMING_LANGUAGES, Channel, ChannelSettings
from channel_orchestrator import ChannelState
from config_utils import read_int_env
from segment_stabilizer import STABILITY_MODES


class ChannelControls(QFrame):
    """Selectors, lifecycle buttons and live transcript lines for one channel."""

    def __init__(self, channel: Channel, settings: ChannelSettings, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self.channel = channel
        self.setObjectName("channelPanel")
        layout = QVBoxLayout(self)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.setSpacing(4)

        header = QHBoxLayout()
        title = QLabel(channel.value.capitalize())
        title.setObjectName("channelTitle")
        header.addWidget(title)
        header.addStretch(1)

        self.language_combo = QComboBox()
        self.language_combo.addItems(STREAMING_LANGUAGES)
        self._select(self.language_combo, settings.source_language)
        header.addWidget(self.language_combo)

        self.stability_combo = QComboBox()
        self.stability_combo.addItems(STABILITY_MODES)
        self._select(self.stability_combo, settings.stability)
        header.addWidget(self.stability_combo)

        self.start_stop_button = QPushButton("Start")
        header.addWidget(self.start_stop_button)

        self.mute_button = QPushButton("Mute")
        self.mute_button.setEnabled(False)
        self.mute_button.setVisible(channel is Channel.AGENT)
        header.addWidget(self.mute_button)
        layout.addLayout(header)

        self.partial_label = QLabel("")
        self.partial_label.setObjectName("partialTranscript")
        self.partial_label.setWordWrap(True)
        layout.addWidget(self.partial_label)

        self.final_label = QLabel("")
        self.final_label.setObjectName("finalTranscript")
        self.final_label.setWordWrap(True)
        layout.addWidget(self.final_label)

        self.translated_label = QLabel("")
        self.translated_label.setObjectName("translatedTranscript")
        self.translated_label.setWordWrap(True)
        layout.addWidget(self.translated_label)

        self.state = ChannelState.IDLE

    def set_state(self, state: ChannelState) -> None:
        self.state = state
        self.start_stop_button.setText("Start" if state is ChannelState.IDLE else "Stop")
        self.mute_button.setEnabled(state is not ChannelState.IDLE)
        self.mute_button.setText("Unmute" if state is ChannelState.MUTED else "Mute")

    def set_selectors_enabled(self, enabled: bool) -> None:
        self.language_combo.setEnabled(enabled)
        self.stability_combo.setEnabled(enabled)

    def clear(self) -> None:
        self.partial_label.clear()
        self.final_label.clear()
        self.translated_label.clear()

    @staticmethod
    def _select(combo: QComboBox, value: str) -> None:
        index = combo.findText(value)
        if index >= 0:
            combo.setCurrentIndex(index)


class TranslatorPanel(QWidget):
    DRAG_ZONE_HEIGHT = 56
    DEFAULT_CARD_LIMIT = 200
    MONOSPACE_FONT_FAMILIES = ["Menlo", "Consolas", "Courier New", "Monospace"]

    start_requested = pyqtSignal(str)
    stop_requested = pyqtSignal(str)
    mute_requested = pyqtSignal()
    settings_changed = pyqtSignal(str, str, str)
    route_requested = pyqtSignal(str)
    speak_requested = pyqtSignal(str, bool)
    connect_requested = pyqtSignal()
    end_call_requested = pyqtSignal()

    def __init__(self, agent_settings: ChannelSettings, customer_settings: ChannelSettings) -> None:
        super().__init__()
        self._drag_offset: Optional[QPoint] = None
        self.cards: deque[str] = deque(maxlen=read_int_env("TRANSCRIPT_CARD_LIMIT", self.DEFAULT_CARD_LIMIT))
        self.channels: dict[Channel, ChannelControls] = {
            Channel.AGENT: ChannelControls(Channel.AGENT, agent_settings),
            Channel.CUSTOMER: ChannelControls(Channel.CUSTOMER, customer_settings),
        }
        self._build_ui()
        self._apply_window_style()

    def channel_state_changed(self, channel: Channel, state: ChannelState) -> None:
        self.channels[channel].set_state(state)
        self.set_status(f"{channel.value.capitalize()} channel {state.value}.")

    def controls_enabled(self, channel: Channel, enabled: bool) -> None:
        self.channels[channel].set_selectors_enabled(enabled)

    def partial_transcript(self, channel: Channel, text: str) -> None:
        self.channels[channel].partial_label.setText(text)

    def final_transcript(self, channel: Channel, text: str) -> None:
        self.channels[channel].final_label.setText(text)

    def translated_transcript(self, channel: Channel, original: str, translated: str) -> None:
        self.channels[channel].translated_label.setText(translated)
        card = f"{channel.value.upper()}: {original}\n  -> {translated}"
        self.cards.append(card)
        self._append_card(card)

    def report_error(self, channel: Channel, message: str) -> None:
        self.set_status(f"{channel.value.capitalize()}: {message}")

    def clear_transcripts(self) -> None:
        for controls in self.channels.values():
            controls.clear()
        self.cards.clear()
        self.transcript_view.clear()

    def set_status(self, message: str) -> None:
        self.status_label.setText(message)

    def set_call_connected(self, connected: bool) -> None:
        self.connect_button.setEnabled(not connected)
        self.end_call_button.setEnabled(connected)

    def _build_ui(self) -> None:
        root = QVBoxLayout(self)
        root.setContentsMargins(6, 6, 6, 6)

        panel = QFrame()
        panel.setObjectName("overlayPanel")
        root.addWidget(panel)

        layout = QVBoxLayout(panel)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(8)

        call_row = QHBoxLayout()
        self.connect_button = QPushButton("Connect Call")
        self.connect_button.clicked.connect(self.connect_requested.emit)
        call_row.addWidget(self.connect_button)
        self.end_call_button = QPushButton("End Call")
        self.end_call_button.setEnabled(False)
        self.end_call_button.clicked.connect(self.end_call_requested.emit)
        call_row.addWidget(self.end_call_button)
        call_row.addStretch(1)
        for label, route in (("Stream File", "file"), ("Stream Mic", "mic"), ("Remove Audio", "silence")):
            button = QPushButton(label)
            button.clicked.connect(lambda _checked=False, value=route: self.route_requested.emit(value))
            call_row.addWidget(button)
        minimize_button = QPushButton("Minimize")
        minimize_button.clicked.connect(self.showMinimized)
        call_row.addWidget(minimize_button)
        layout.addLayout(call_row)

        for controls in self.channels.values():
            self._wire_channel(controls)
            layout.addWidget(controls)

        speak_row = QHBoxLayout()
        self.speak_input = QLineEdit()
        self.speak_input.setPlaceholderText("Type a sentence for the customer...")
        self.speak_input.returnPressed.connect(self._on_speak_clicked)
        speak_row.addWidget(self.speak_input, 1)
        self.translate_checkbox = QCheckBox("Translate")
        self.translate_checkbox.setChecked(True)
        speak_row.addWidget(self.translate_checkbox)
        speak_button = QPushButton("Speak")
        speak_button.clicked.connect(self._on_speak_clicked)
        speak_row.addWidget(speak_button)
        layout.addLayout(speak_row)

        self.transcript_view = QTextEdit()
        self.transcript_view.setReadOnly(True)
        self.transcript_view.setAcceptRichText(False)
        self.transcript_view.setLineWrapMode(QTextEdit.LineWrapMode.WidgetWidth)
        self.transcript_view.setFont(self._make_monospace_font(read_int_env("OVERLAY_FONT_SIZE", 14)))
        layout.addWidget(self.transcript_view)

        self.status_label = QLabel("Idle")
        status_row = QHBoxLayout()
        status_row.addWidget(self.status_label)
        status_row.addStretch(1)
        self.size_grip = QSizeGrip(panel)
        status_row.addWidget(self.size_grip, alignment=Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignRight)
        layout.addLayout(status_row)

    def _wire_channel(self, controls: ChannelControls) -> None:
        name = controls.channel.value
        controls.start_stop_button.clicked.connect(lambda _checked=False: self._on_start_stop_clicked(controls))
        controls.mute_button.clicked.connect(self.mute_requested.emit)
        controls.language_combo.currentTextChanged.connect(
            lambda value: self.settings_changed.emit(name, "source_language", value)
        )
        controls.stability_combo.currentTextChanged.connect(
            lambda value: self.settings_changed.emit(name, "stability", value)
        )

    def _on_start_stop_clicked(self, controls: ChannelControls) -> None:
        if controls.state is ChannelState.IDLE:
            self.start_requested.emit(controls.channel.value)
        else:
            self.stop_requested.emit(controls.channel.value)

    def _on_speak_clicked(self) -> None:
        text = self.speak_input.text().strip()
        if not text:
            return
        self.speak_input.clear()
        self.speak_requested.emit(text, self.translate_checkbox.isChecked())

    def _append_card(self, card: str) -> None:
        if self.transcript_view.toPlainText():
            self.transcript_view.insertPlainText("\n")
        self.transcript_view.insertPlainText(card)
        cursor = self.transcript_view.textCursor()
        cursor.movePosition(QTextCursor.MoveOperation.End)
        self.transcript_view.setTextCursor(cursor)
        self.transcript_view.ensureCursorVisible()

    def _apply_window_style(self) -> None:
        self.setWindowTitle("Call Voice Translator")
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)
        self.setMinimumSize(640, 420)
        self.resize(980, 560)

        self.setStyleSheet(
            """
            #overlayPanel {
                background-color: rgba(28, 28, 28, 200);
                border: 1px solid rgba(255, 255, 255, 48);
                border-radius: 12px;
            }
            #channelPanel {
                background-color: rgba(0, 0, 0, 120);
                border: 1px solid rgba(255, 255, 255, 32);
                border-radius: 10px;
            }
            #channelTitle {
                font-weight: bold;
            }
            #partialTranscript {
                color: rgb(240, 210, 90);
            }
            #finalTranscript {
                color: rgb(120, 220, 130);
            }
            QTextEdit, QLineEdit {
                background-color: rgba(43, 43, 43, 120);
                color: white;
                border: none;
                padding: 6px;
            }
            QLabel, QCheckBox {
                color: white;
            }
            QPushButton {
                background-color: rgba(70, 70, 70, 220);
                color: white;
                border: 1px solid rgba(255, 255, 255, 50);
                border-radius: 8px;
                padding: 6px 9px;
            }
            QPushButton:hover {
                background-color: rgba(88, 88, 88, 220);
            }
            """
        )

    def mousePressEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if event.button() == Qt.MouseButton.LeftButton:
            local_pos = event.position().toPoint()
            if local_pos.y() <= self.DRAG_ZONE_HEIGHT:
                self._drag_offset = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
                event.accept()

    def mouseMoveEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if self._drag_offset is not None and event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_offset)
            event.accept()

    def mouseReleaseEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        self._drag_offset = None
        event.accept()

    @classmethod
    def _make_monospace_font(cls, point_size: int, bold: bool = False) -> QFont:
        font = QFont()
        font.setFamilies(cls.MONOSPACE_FONT_FAMILIES)
        font.setStyleHint(QFont.StyleHint.Monospace)
        font.setPointSize(point_size)
        font.setBold(bold)
        return font
