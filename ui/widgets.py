from __future__ import annotations

from typing import Optional

from PySide6 import QtCore, QtGui, QtWidgets

from config import (
    BAND_COUNT_RANGE,
    DECAY_FACTOR_RANGE,
    EMA_ALPHA_RANGE,
    FULL_COMPUTE_RANGE_MS,
    TICK_INTERVAL_RANGE_MS,
    WINDOW_SIZES,
    VisualizerConfig,
)
from models import BandMode, SpectrumFrame
from utils import clamp, format_time

# UI Widgets
# -----------------------------

BAND_MODE_LABELS = {
    BandMode.OFF: "Raw bins",
    BandMode.LOG: "Log bands",
    BandMode.ISO: "ISO 1/3 octave",
}


class SpectrumWidget(QtWidgets.QWidget):
    """Paints the latest SpectrumFrame; holds no analysis state of its own."""

    def __init__(self, parent=None):
        super().__init__(parent)
        self._frame: Optional[SpectrumFrame] = None
        self.setMinimumHeight(180)
        self.setSizePolicy(QtWidgets.QSizePolicy.Policy.Expanding, QtWidgets.QSizePolicy.Policy.Expanding)

    @property
    def frame(self) -> Optional[SpectrumFrame]:
        return self._frame

    def set_frame(self, frame: SpectrumFrame) -> None:
        self._frame = frame
        self.update()

    def clear(self) -> None:
        self._frame = None
        self.update()

    def paintEvent(self, event: QtGui.QPaintEvent) -> None:
        painter = QtGui.QPainter(self)
        painter.setRenderHint(QtGui.QPainter.RenderHint.Antialiasing, False)
        palette = self.palette()
        background = palette.color(QtGui.QPalette.ColorRole.Base)
        text_color = palette.color(QtGui.QPalette.ColorRole.Text)
        highlight = palette.color(QtGui.QPalette.ColorRole.Highlight)
        painter.fillRect(self.rect(), background)

        rect = self.rect().adjusted(12, 12, -12, -12)
        if rect.width() <= 0 or rect.height() <= 0:
            return

        frame = self._frame
        if frame is None or frame.bins == 0:
            painter.setPen(QtGui.QPen(text_color, 1))
            painter.drawText(rect, QtCore.Qt.AlignmentFlag.AlignCenter, "Waiting for spectrum…")
            return

        baseline_y = rect.bottom()
        painter.setPen(QtGui.QPen(text_color, 1))
        painter.drawLine(rect.left(), baseline_y, rect.right(), baseline_y)

        values = frame.values
        bar_count = frame.bins
        bar_width = rect.width() / bar_count
        gap = 1.0 if bar_width > 3 else 0.0
        painter.setPen(QtCore.Qt.PenStyle.NoPen)
        for i, level in enumerate(values):
            bar_height = rect.height() * clamp(float(level), 0.0, 1.0)
            if bar_height <= 1:
                continue
            x = rect.left() + i * bar_width
            y = rect.bottom() - bar_height
            color = QtGui.QColor(highlight)
            color = color.lighter(110 + int(60 * (i / max(1, bar_count - 1))))
            painter.setBrush(QtGui.QBrush(color))
            painter.drawRect(QtCore.QRectF(x + gap, y, max(1.0, bar_width - 2 * gap), bar_height))

        if frame.peaks is not None and frame.peaks.shape[0] == bar_count:
            tick_color = QtGui.QColor(text_color)
            painter.setPen(QtGui.QPen(tick_color, 2))
            for i, level in enumerate(frame.peaks):
                if level <= 0.0:
                    continue
                x = rect.left() + i * bar_width
                y = rect.bottom() - rect.height() * clamp(float(level), 0.0, 1.0)
                painter.drawLine(QtCore.QPointF(x + gap, y), QtCore.QPointF(x + bar_width - gap, y))

        # scalar peak line
        peak_y = rect.bottom() - rect.height() * clamp(frame.peak, 0.0, 1.0)
        peak_pen = QtGui.QPen(QtGui.QColor(highlight).darker(130), 1, QtCore.Qt.PenStyle.DashLine)
        painter.setPen(peak_pen)
        painter.drawLine(QtCore.QPointF(rect.left(), peak_y), QtCore.QPointF(rect.right(), peak_y))

        painter.setPen(QtGui.QPen(text_color, 1))
        painter.drawText(
            rect,
            QtCore.Qt.AlignmentFlag.AlignTop | QtCore.Qt.AlignmentFlag.AlignLeft,
            f"{frame.mode.upper()}  bins={bar_count}  peak={frame.peak:.3f}",
        )


class VisualizerControlsWidget(QtWidgets.QGroupBox):
    configChanged = QtCore.Signal(object)  # VisualizerConfig

    def __init__(self, config: Optional[VisualizerConfig] = None, parent=None):
        super().__init__("Visualizer", parent)
        self._config = (config or VisualizerConfig()).normalized()

        self.enabled_checkbox = QtWidgets.QCheckBox("Visualization")
        self.enabled_checkbox.setToolTip("Master switch: stop or resume spectrum updates.")
        self.fft_checkbox = QtWidgets.QCheckBox("FFT spectrum")
        self.fft_checkbox.setToolTip("Off: transform-free wave energy bars.")
        self.decay_checkbox = QtWidgets.QCheckBox("Decay between updates")

        self.window_combo = QtWidgets.QComboBox()
        for size in WINDOW_SIZES:
            self.window_combo.addItem(str(size), size)
        self.window_combo.setToolTip("Samples per analysis window.")

        self.band_mode_combo = QtWidgets.QComboBox()
        for mode, label in BAND_MODE_LABELS.items():
            self.band_mode_combo.addItem(label, mode.value)

        self.decay_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.decay_slider.setRange(int(DECAY_FACTOR_RANGE[0] * 1000), int(DECAY_FACTOR_RANGE[1] * 1000))
        self.decay_slider.setToolTip("Per-tick multiplier applied between full updates.")

        self.tick_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.tick_slider.setRange(*TICK_INTERVAL_RANGE_MS)
        self.tick_slider.setToolTip("Scheduler tick period.")

        self.full_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.full_slider.setRange(*FULL_COMPUTE_RANGE_MS)
        self.full_slider.setToolTip("Minimum time between full spectrum recomputes.")

        self.alpha_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.alpha_slider.setRange(int(EMA_ALPHA_RANGE[0] * 100), int(EMA_ALPHA_RANGE[1] * 100))
        self.alpha_slider.setToolTip("Band smoothing weight of the previous frame.")

        self.band_count_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.band_count_slider.setRange(*BAND_COUNT_RANGE)

        self.decay_label = QtWidgets.QLabel()
        self.tick_label = QtWidgets.QLabel()
        self.full_label = QtWidgets.QLabel()
        self.alpha_label = QtWidgets.QLabel()
        self.band_count_label = QtWidgets.QLabel()

        toggles = QtWidgets.QHBoxLayout()
        toggles.addWidget(self.enabled_checkbox)
        toggles.addWidget(self.fft_checkbox)
        toggles.addWidget(self.decay_checkbox)
        toggles.addStretch(1)

        form = QtWidgets.QFormLayout()
        form.addRow("Window", self.window_combo)
        form.addRow("Bands", self.band_mode_combo)
        form.addRow(self.band_count_label, self.band_count_slider)
        form.addRow(self.alpha_label, self.alpha_slider)
        form.addRow(self.decay_label, self.decay_slider)
        form.addRow(self.tick_label, self.tick_slider)
        form.addRow(self.full_label, self.full_slider)

        layout = QtWidgets.QVBoxLayout(self)
        layout.addLayout(toggles)
        layout.addLayout(form)

        self.set_config(self._config)

        for checkbox in (self.enabled_checkbox, self.fft_checkbox, self.decay_checkbox):
            checkbox.toggled.connect(self._emit)
        self.window_combo.currentIndexChanged.connect(self._emit)
        self.band_mode_combo.currentIndexChanged.connect(self._emit)
        for slider in (
            self.decay_slider,
            self.tick_slider,
            self.full_slider,
            self.alpha_slider,
            self.band_count_slider,
        ):
            slider.valueChanged.connect(self._emit)

    def config(self) -> VisualizerConfig:
        return self._config

    def set_config(self, config: VisualizerConfig) -> None:
        """Show `config` without emitting configChanged."""
        cfg = config.normalized()
        widgets = (
            self.enabled_checkbox,
            self.fft_checkbox,
            self.decay_checkbox,
            self.window_combo,
            self.band_mode_combo,
            self.decay_slider,
            self.tick_slider,
            self.full_slider,
            self.alpha_slider,
            self.band_count_slider,
        )
        for w in widgets:
            w.blockSignals(True)
        self.enabled_checkbox.setChecked(cfg.enabled)
        self.fft_checkbox.setChecked(cfg.use_fft)
        self.decay_checkbox.setChecked(cfg.decay_enabled)
        self.window_combo.setCurrentIndex(max(0, self.window_combo.findData(cfg.window_size)))
        self.band_mode_combo.setCurrentIndex(max(0, self.band_mode_combo.findData(cfg.band_mode.value)))
        self.decay_slider.setValue(int(round(cfg.decay_factor * 1000)))
        self.tick_slider.setValue(cfg.tick_interval_ms)
        self.full_slider.setValue(cfg.full_compute_interval_ms)
        self.alpha_slider.setValue(int(round(cfg.ema_alpha * 100)))
        self.band_count_slider.setValue(cfg.band_count)
        for w in widgets:
            w.blockSignals(False)
        self._config = cfg
        self._update_labels()

    def _update_labels(self) -> None:
        cfg = self._config
        self.decay_label.setText(f"Decay: {cfg.decay_factor:.3f}")
        self.tick_label.setText(f"Update: {cfg.tick_interval_ms} ms")
        self.full_label.setText(f"Full: {cfg.full_compute_interval_ms} ms")
        self.alpha_label.setText(f"Smoothing: {cfg.ema_alpha:.2f}")
        self.band_count_label.setText(f"Band count: {cfg.band_count}")

        banded = cfg.band_mode is not BandMode.OFF
        self.band_count_slider.setEnabled(cfg.band_mode is BandMode.LOG)
        self.alpha_slider.setEnabled(banded)
        self.decay_slider.setEnabled(cfg.decay_enabled)

    def _emit(self, *_args) -> None:
        self._config = self._config.updated(
            enabled=self.enabled_checkbox.isChecked(),
            use_fft=self.fft_checkbox.isChecked(),
            decay_enabled=self.decay_checkbox.isChecked(),
            window_size=int(self.window_combo.currentData()),
            band_mode=BandMode.from_setting(str(self.band_mode_combo.currentData())),
            decay_factor=self.decay_slider.value() / 1000.0,
            tick_interval_ms=self.tick_slider.value(),
            full_compute_interval_ms=self.full_slider.value(),
            ema_alpha=self.alpha_slider.value() / 100.0,
            band_count=self.band_count_slider.value(),
        )
        self._update_labels()
        self.configChanged.emit(self._config)


class TransportWidget(QtWidgets.QFrame):
    """One-row transport: open, play/pause, stop, position, volume."""

    openClicked = QtCore.Signal()
    playPauseToggled = QtCore.Signal(bool)
    stopClicked = QtCore.Signal()
    seekRequested = QtCore.Signal(float)  # seconds
    volumeChanged = QtCore.Signal(float)  # 0..1
    muteToggled = QtCore.Signal(bool)

    SEEK_STEPS = 1000

    def __init__(self, parent=None):
        super().__init__(parent)
        self._duration = 0.0
        self._seeking = False

        self.open_btn = self._tool_button("Open…", "Open an audio file (Ctrl+O).")
        self.play_pause_btn = self._tool_button("▶", "Play or pause (Space).", checkable=True)
        self.stop_btn = self._tool_button("⏹", "Stop and rewind.")
        self.mute_btn = self._tool_button("\U0001f508", "Mute output.", checkable=True)

        self.pos_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.pos_slider.setRange(0, self.SEEK_STEPS)
        self.pos_slider.setAccessibleName("Playback position")
        self.elapsed_label = QtWidgets.QLabel(format_time(0.0))
        self.total_label = QtWidgets.QLabel(format_time(0.0))

        self.volume_slider = QtWidgets.QSlider(QtCore.Qt.Orientation.Horizontal)
        self.volume_slider.setRange(0, 100)
        self.volume_slider.setValue(80)
        self.volume_slider.setMaximumWidth(110)
        self.volume_slider.setAccessibleName("Output volume")

        row = QtWidgets.QHBoxLayout(self)
        row.setContentsMargins(0, 4, 0, 4)
        for w in (self.open_btn, self.play_pause_btn, self.stop_btn, self.elapsed_label):
            row.addWidget(w)
        row.addWidget(self.pos_slider, 1)
        for w in (self.total_label, self.mute_btn, self.volume_slider):
            row.addWidget(w)

        self.open_btn.clicked.connect(self.openClicked)
        self.play_pause_btn.toggled.connect(self.playPauseToggled)
        self.stop_btn.clicked.connect(self.stopClicked)
        self.mute_btn.toggled.connect(self._mute_toggled)
        self.volume_slider.valueChanged.connect(self._volume_moved)
        self.pos_slider.sliderPressed.connect(self._seek_started)
        self.pos_slider.sliderReleased.connect(self._seek_finished)

    def _tool_button(self, text: str, tip: str, checkable: bool = False) -> QtWidgets.QToolButton:
        btn = QtWidgets.QToolButton(text=text)
        btn.setToolTip(tip)
        btn.setCheckable(checkable)
        btn.setMinimumSize(34, 34)
        return btn

    def _mute_toggled(self, muted: bool):
        self.mute_btn.setText("\U0001f507" if muted else "\U0001f508")
        self.muteToggled.emit(muted)

    def _volume_moved(self, value: int):
        self.volumeChanged.emit(value / 100.0)

    def _seek_started(self):
        self._seeking = True

    def _seek_finished(self):
        self._seeking = False
        if self._duration > 0:
            self.seekRequested.emit(self.pos_slider.value() / self.SEEK_STEPS * self._duration)

    def set_playing(self, playing: bool):
        was_blocked = self.play_pause_btn.blockSignals(True)
        self.play_pause_btn.setChecked(playing)
        self.play_pause_btn.blockSignals(was_blocked)
        self.play_pause_btn.setText("⏸" if playing else "▶")

    def set_position(self, pos_sec: float, dur_sec: float):
        self._duration = max(0.0, float(dur_sec))
        self.elapsed_label.setText(format_time(pos_sec))
        self.total_label.setText(format_time(self._duration))
        if self._seeking:
            return
        if self._duration > 0:
            self.pos_slider.setValue(int(round(clamp(pos_sec / self._duration, 0.0, 1.0) * self.SEEK_STEPS)))
        else:
            self.pos_slider.setValue(0)
