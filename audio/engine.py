from __future__ import annotations

import logging
import math
import threading
from typing import Optional

import numpy as np
from PySide6 import QtCore

try:
    import sounddevice as sd
    _sounddevice_import_error = None
except Exception as e:
    sd = None
    _sounddevice_import_error = e

from audio.pcm_source import PcmSource
from models import PlayerState, Track
from utils import clamp

logger = logging.getLogger(__name__)

DEFAULT_BLOCKSIZE_FRAMES = 1024


# -----------------------------
# Player engine
# -----------------------------

class PlayerEngine(QtCore.QObject):
    """
    Plays decoded PCM from a PcmSource through a sounddevice output stream.

    Also serves as the position provider for the spectrum scheduler:
    current_position_ms() reports what is audible now (output latency
    subtracted), is_playing() the transport state.
    """

    stateChanged = QtCore.Signal(object)    # PlayerState
    errorOccurred = QtCore.Signal(str)
    durationChanged = QtCore.Signal(float)
    trackChanged = QtCore.Signal(object)    # Track
    trackFinished = QtCore.Signal()
    _finishedFromCallback = QtCore.Signal()

    def __init__(self, blocksize_frames: int = DEFAULT_BLOCKSIZE_FRAMES, parent=None):
        super().__init__(parent)
        self.state = PlayerState.STOPPED
        self.track: Optional[Track] = None
        self._source: Optional[PcmSource] = None
        self._frames: Optional[np.ndarray] = None
        self.sample_rate = 0
        self.channels = 0
        self._blocksize_frames = int(blocksize_frames)

        self._stream = None
        self._volume = 0.8
        self._muted = False
        self._paused = False

        self._frame_pos = 0
        self._position_lock = threading.Lock()
        self._finishedFromCallback.connect(self._on_stream_finished, QtCore.Qt.ConnectionType.QueuedConnection)

    def set_volume(self, v: float):
        self._volume = clamp(float(v), 0.0, 1.0)

    def set_muted(self, muted: bool):
        self._muted = bool(muted)

    def load(self, track: Track, source: PcmSource) -> None:
        """Attach a prepared source; playback starts with play()."""
        self.stop()
        frames = source.frames()
        if frames is None or not source.ready:
            self._set_error(f"Decoded audio not available for {track.path}")
            return
        self._source = source
        self._frames = frames
        self.sample_rate = source.sample_rate
        self.channels = source.channels
        track.duration_sec = source.info.duration_sec
        self.track = track
        with self._position_lock:
            self._frame_pos = 0
        self.trackChanged.emit(track)
        self.durationChanged.emit(track.duration_sec)

    def unload(self) -> None:
        self.stop()
        self._source = None
        self._frames = None
        self.track = None

    def play(self):
        if sd is None:
            self._set_error(f"sounddevice not available: {_sounddevice_import_error}")
            return
        if self._frames is None:
            return
        if self.state == PlayerState.PAUSED:
            self._paused = False
            self._set_state(PlayerState.PLAYING)
            return
        if self.state == PlayerState.PLAYING:
            return
        with self._position_lock:
            if self._frame_pos >= self._frames.shape[0]:
                self._frame_pos = 0
        self._paused = False
        self._ensure_stream()
        if self._stream is not None:
            self._set_state(PlayerState.PLAYING)

    def pause(self):
        if self.state == PlayerState.PLAYING:
            self._paused = True
            self._set_state(PlayerState.PAUSED)

    def resume(self):
        if self.state == PlayerState.PAUSED:
            self.play()

    def stop(self):
        self._paused = False
        self._close_stream()
        with self._position_lock:
            self._frame_pos = 0
        self._set_state(PlayerState.STOPPED)

    def seek(self, target_sec: float):
        if self._frames is None or self.sample_rate <= 0:
            return
        total = self._frames.shape[0]
        target = int(clamp(float(target_sec), 0.0, total / float(self.sample_rate)) * self.sample_rate)
        with self._position_lock:
            self._frame_pos = min(total, target)

    def _ensure_stream(self):
        if self._stream is not None:
            try:
                if not self._stream.active:
                    self._stream.start()
            except Exception as e:
                logger.warning("Restarting output stream failed: %s", e)
            return

        frames_ref = self._frames

        def callback(outdata, frames, time_info, status):
            if self._paused:
                outdata.fill(0)
                return
            with self._position_lock:
                pos = self._frame_pos
                end = min(pos + frames, frames_ref.shape[0])
                self._frame_pos = end
            filled = end - pos
            if filled > 0:
                outdata[:filled] = frames_ref[pos:end]
            if filled < frames:
                outdata[filled:].fill(0)
            vol = 0.0 if self._muted else self._volume
            if vol == 0.0:
                outdata.fill(0)
            elif vol != 1.0:
                outdata *= vol
            if status and getattr(status, "output_underflow", False):
                logger.debug("Output underflow")
            if end >= frames_ref.shape[0]:
                self._finishedFromCallback.emit()
                raise sd.CallbackStop()

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self._blocksize_frames,
                callback=callback,
            )
            self._stream.start()
        except Exception as e:
            self._set_error(f"Audio output error: {e}")
            self._stream = None

    def _close_stream(self):
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.debug("Closing output stream failed: %s", e)
            self._stream = None

    @QtCore.Slot()
    def _on_stream_finished(self) -> None:
        if self.state != PlayerState.PLAYING:
            return
        self._close_stream()
        self._paused = False
        with self._position_lock:
            self._frame_pos = 0
        self._set_state(PlayerState.STOPPED)
        self.trackFinished.emit()

    def get_position(self) -> float:
        with self._position_lock:
            pos = self._frame_pos
        if self.sample_rate <= 0:
            return 0.0
        return pos / float(self.sample_rate)

    def get_output_latency_seconds(self) -> float:
        latency = None
        if self._stream is not None:
            try:
                latency = self._stream.latency
            except Exception:
                latency = None
        try:
            latency_sec = float(latency) if latency is not None else 0.0
        except (TypeError, ValueError):
            latency_sec = 0.0
        if not math.isfinite(latency_sec) or latency_sec <= 0.0:
            if self.sample_rate <= 0:
                return 0.0
            latency_sec = self._blocksize_frames / float(self.sample_rate)
        return latency_sec

    # position provider for the spectrum scheduler
    def current_position_ms(self) -> int:
        if self.state not in (PlayerState.PLAYING, PlayerState.PAUSED):
            return 0
        audible = self.get_position()
        # a paused stream outputs silence, so nothing is queued behind the cursor
        if not self._paused:
            audible -= self.get_output_latency_seconds()
        return max(0, int(audible * 1000.0))

    def is_playing(self) -> bool:
        return self.state == PlayerState.PLAYING

    def _set_state(self, st: PlayerState):
        if self.state != st:
            self.state = st
            self.stateChanged.emit(st)

    def _set_error(self, msg: str):
        logger.error(msg)
        self._set_state(PlayerState.ERROR)
        self.errorOccurred.emit(msg)
