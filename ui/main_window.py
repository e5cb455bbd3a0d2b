from __future__ import annotations

import logging
import os
from typing import Optional

from PySide6 import QtCore, QtGui, QtWidgets

from audio.engine import PlayerEngine, sd, _sounddevice_import_error
from audio.pcm_source import PcmFileSource, PcmSource
from audio.scheduler import SpectrumPoller, SpectrumScheduler
from config import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    SETTINGS_APP,
    SETTINGS_ORG,
    VisualizerConfig,
    load_visualizer_config,
    save_visualizer_config,
)
from models import PcmInfo, PlayerState, SpectrumFrame, Track
from utils import clamp, have_exe
from ui.widgets import SpectrumWidget, TransportWidget, VisualizerControlsWidget
from ui.workers.decode import DecodeWorker

logger = logging.getLogger(__name__)

MEDIA_FILTER = "Audio files (*.mp3 *.wav *.flac *.ogg *.m4a *.aac *.opus);;All files (*)"


# Main Window
# -----------------------------

class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, initial_path: Optional[str] = None):
        super().__init__()
        self.setWindowTitle("Music Visio")
        self.resize(960, 560)

        self.settings = QtCore.QSettings(SETTINGS_ORG, SETTINGS_APP)
        vis_config = load_visualizer_config(self.settings)

        self.engine = PlayerEngine(parent=self)
        self.scheduler = SpectrumScheduler(vis_config)
        self.poller = SpectrumPoller(self.scheduler, parent=self)

        self._source: Optional[PcmSource] = None
        self._pending_track: Optional[Track] = None
        self._decode_thread: Optional[QtCore.QThread] = None
        self._decode_worker: Optional[DecodeWorker] = None
        self._dur = 0.0

        self.transport = TransportWidget()
        self.spectrum = SpectrumWidget()
        self.controls = VisualizerControlsWidget(vis_config)

        self.track_title = QtWidgets.QLabel("No track loaded")
        self.track_title.setObjectName("track_title")
        self.track_title.setWordWrap(True)
        title_font = self.track_title.font()
        title_font.setPointSize(title_font.pointSize() + 4)
        title_font.setBold(True)
        self.track_title.setFont(title_font)

        self.status = QtWidgets.QLabel("Ready.")
        self.status.setObjectName("status_label")
        self.vis_status = QtWidgets.QLabel("")
        status_bar = self.statusBar()
        status_bar.addWidget(self.status, 1)
        status_bar.addPermanentWidget(self.vis_status)

        left = QtWidgets.QVBoxLayout()
        left.addWidget(self.track_title)
        left.addWidget(self.spectrum, 1)
        left.addWidget(self.transport)

        central = QtWidgets.QWidget()
        root = QtWidgets.QHBoxLayout(central)
        root.addLayout(left, 1)
        root.addWidget(self.controls)
        self.setCentralWidget(central)

        self._build_menu()

        self.transport.openClicked.connect(self._open_file_dialog)
        self.transport.playPauseToggled.connect(self._toggle_play_pause)
        self.transport.stopClicked.connect(self._on_stop)
        self.transport.seekRequested.connect(self.engine.seek)
        self.transport.volumeChanged.connect(self.engine.set_volume)
        self.transport.muteToggled.connect(self.engine.set_muted)

        self.engine.stateChanged.connect(self._on_state_changed)
        self.engine.errorOccurred.connect(self._on_error)
        self.engine.durationChanged.connect(self._on_duration_changed)
        self.engine.trackChanged.connect(self._on_track_changed)
        self.engine.trackFinished.connect(self._on_track_finished)

        self.poller.frameReady.connect(self._on_frame)
        self.poller.cleared.connect(self.spectrum.clear)
        self.controls.configChanged.connect(self._on_visualizer_config_changed)

        self._restore_ui_settings()

        self._ui_timer = QtCore.QTimer(self)
        self._ui_timer.setInterval(200)
        self._ui_timer.timeout.connect(self._tick)
        self._ui_timer.start()

        self._on_state_changed(self.engine.state)
        self._initial_warnings()

        if initial_path:
            QtCore.QTimer.singleShot(0, lambda: self.open_path(initial_path))

    def _build_menu(self) -> None:
        file_menu = self.menuBar().addMenu("&File")
        open_action = QtGui.QAction("&Open…", self)
        open_action.setShortcut(QtGui.QKeySequence.StandardKey.Open)
        open_action.triggered.connect(self._open_file_dialog)
        file_menu.addAction(open_action)
        file_menu.addSeparator()
        quit_action = QtGui.QAction("&Quit", self)
        quit_action.setShortcut(QtGui.QKeySequence.StandardKey.Quit)
        quit_action.triggered.connect(self.close)
        file_menu.addAction(quit_action)

        play_shortcut = QtGui.QShortcut(QtGui.QKeySequence(QtCore.Qt.Key.Key_Space), self)
        play_shortcut.activated.connect(self._toggle_play_pause)

    def _initial_warnings(self):
        warnings = []
        if sd is None:
            warnings.append(f"sounddevice missing ({_sounddevice_import_error})")
        if not have_exe("ffmpeg"):
            warnings.append("ffmpeg not found in PATH")
        self.status.setText(("⚠ " + " | ".join(warnings)) if warnings else "Ready.")

    def _open_file_dialog(self):
        start_dir = str(self.settings.value("last_dir", os.path.expanduser("~")))
        path, _ = QtWidgets.QFileDialog.getOpenFileName(self, "Open audio file", start_dir, MEDIA_FILTER)
        if not path:
            return
        self.settings.setValue("last_dir", os.path.dirname(path))
        self.open_path(path)

    # Loading
    # -----------------------------

    def open_path(self, path: str) -> None:
        self._stop_decode_worker()
        self._release_source()

        track = Track.from_path(path)
        self._pending_track = track
        self.track_title.setText(track.title)
        self.status.setText(f"Decoding {os.path.basename(path)}…")

        source = PcmFileSource(path, DEFAULT_SAMPLE_RATE, DEFAULT_CHANNELS)
        worker = DecodeWorker(source)
        thread = QtCore.QThread(self)
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        worker.finished.connect(self._on_decode_finished, QtCore.Qt.ConnectionType.QueuedConnection)
        worker.failed.connect(self._on_decode_failed, QtCore.Qt.ConnectionType.QueuedConnection)
        worker.finished.connect(thread.quit)
        worker.failed.connect(thread.quit)
        thread.finished.connect(worker.deleteLater)
        thread.finished.connect(thread.deleteLater)
        thread.start()
        self._decode_worker = worker
        self._decode_thread = thread

    def _on_decode_finished(self, info: PcmInfo) -> None:
        worker = self.sender()
        if worker is not self._decode_worker:
            # superseded by a newer open
            if isinstance(worker, DecodeWorker):
                worker.source.dispose()
            return
        source = worker.source
        track = self._pending_track or Track.from_path(worker.source.media_path)
        self._finish_decode_worker()

        self._source = source
        self.engine.load(track, source)
        self.scheduler.attach(source, self.engine)
        logger.info(
            "Loaded %s (%d Hz, %d ch, %.1fs)",
            track.path,
            info.sample_rate,
            info.channels,
            info.duration_sec,
        )
        self.engine.play()
        if self.engine.is_playing():
            self.scheduler.mark_playback_started()
            self.poller.start()

    def _on_decode_failed(self, msg: str) -> None:
        worker = self.sender()
        if isinstance(worker, DecodeWorker):
            worker.source.dispose()
        if worker is not self._decode_worker:
            return
        self._finish_decode_worker()
        self._pending_track = None
        self._on_error(msg)

    def _finish_decode_worker(self) -> None:
        # thread and worker delete themselves once the thread finishes
        self._decode_worker = None
        self._decode_thread = None

    def _stop_decode_worker(self, *, wait: bool = False) -> None:
        # a running decode cannot be interrupted; its result is dropped on arrival
        thread = self._decode_thread
        if thread is not None and wait:
            thread.quit()
            thread.wait()
        self._decode_worker = None
        self._decode_thread = None

    def _release_source(self) -> None:
        self.poller.stop()
        self.scheduler.detach()
        self.spectrum.clear()
        self.engine.unload()
        if self._source is not None:
            self._source.dispose()
            self._source = None

    # Transport
    # -----------------------------

    def _toggle_play_pause(self, _checked: Optional[bool] = None):
        if self.engine.state == PlayerState.PLAYING:
            self.engine.pause()
        else:
            self._on_play()

    def _on_play(self):
        if self.engine.track is None:
            self._open_file_dialog()
            return
        resuming = self.engine.state == PlayerState.PAUSED
        if resuming:
            self.engine.resume()
        else:
            self.engine.play()
        if self.engine.is_playing():
            if not resuming:
                self.scheduler.reset()
                self.scheduler.mark_playback_started()
            self.poller.start()

    def _on_stop(self):
        self.engine.stop()
        self.poller.stop()
        self.scheduler.reset()
        self.spectrum.clear()

    # Engine / poller callbacks
    # -----------------------------

    def _on_state_changed(self, st: PlayerState):
        has_track = self.engine.track is not None
        self.transport.stop_btn.setEnabled(has_track)
        self.transport.pos_slider.setEnabled(has_track)
        self.transport.set_playing(has_track and st == PlayerState.PLAYING)
        if st == PlayerState.STOPPED:
            self.poller.stop()

    def _on_track_changed(self, track: Track):
        self.track_title.setText(track.title)
        self.setWindowTitle(f"{track.title} - Music Visio")

    def _on_track_finished(self):
        self.poller.stop()
        self.scheduler.reset()
        self.spectrum.clear()

    def _on_duration_changed(self, dur: float):
        self._dur = float(dur)

    def _on_error(self, msg: str):
        self.status.setText(f"❌ {msg}")
        QtWidgets.QMessageBox.warning(self, "Playback error", msg)

    def _on_frame(self, frame: SpectrumFrame) -> None:
        self.spectrum.set_frame(frame)

    def _on_visualizer_config_changed(self, cfg: VisualizerConfig) -> None:
        self.poller.set_config(cfg)
        if cfg.enabled and self.engine.is_playing() and not self.poller.is_active():
            self.poller.start()

    def _tick(self):
        pos = self.engine.get_position()
        self.transport.set_position(pos, self._dur)

        st = self.engine.state
        if st == PlayerState.PLAYING:
            self.status.setText("Playing")
        elif st == PlayerState.PAUSED:
            self.status.setText("Paused")
        elif st == PlayerState.STOPPED and self.engine.track is not None:
            self.status.setText("Stopped")

        cfg = self.scheduler.config
        if not cfg.enabled:
            vis_text = "Visualization off"
        else:
            kind = "FFT" if cfg.use_fft else "Wave"
            vis_text = f"{kind} | {cfg.band_mode.value} | {cfg.window_size}"
        if self.vis_status.text() != vis_text:
            self.vis_status.setText(vis_text)

    def closeEvent(self, e: QtGui.QCloseEvent):
        self._save_ui_settings()
        self._ui_timer.stop()
        self.poller.shutdown()
        self.engine.stop()
        pending = self._decode_worker
        self._stop_decode_worker(wait=True)
        if pending is not None:
            pending.source.dispose()
        if self._source is not None:
            self._source.dispose()
            self._source = None
        super().closeEvent(e)

    # Settings
    # -----------------------------

    def _restore_ui_settings(self):
        self._set_slider_from_setting(
            "audio/volume_slider",
            self.transport.volume_slider,
            80,
            clamp_range=(0, 100),
            value_type=int,
        )
        self.engine.set_volume(self.transport.volume_slider.value() / 100.0)
        geometry = self.settings.value("ui/geometry")
        if isinstance(geometry, QtCore.QByteArray):
            self.restoreGeometry(geometry)

    def _save_ui_settings(self):
        self._save_slider_setting("audio/volume_slider", self.transport.volume_slider)
        self.settings.setValue("ui/geometry", self.saveGeometry())
        save_visualizer_config(self.settings, self.scheduler.config)

    def _set_slider_from_setting(
        self,
        key: str,
        slider: QtWidgets.QSlider,
        default: float,
        *,
        scale: float = 1.0,
        clamp_range: Optional[tuple[float, float]] = None,
        value_type: type = float,
    ) -> None:
        value = float(self.settings.value(key, default, type=value_type))
        if clamp_range is not None:
            value = clamp(value, clamp_range[0], clamp_range[1])
        slider.setValue(int(round(value * scale)))

    def _save_slider_setting(self, key: str, slider: QtWidgets.QSlider, *, scale: float = 1.0) -> None:
        self.settings.setValue(key, slider.value() / scale)
