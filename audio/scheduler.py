from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import numpy as np
from PySide6 import QtCore

from audio.pcm_source import PcmSource
from audio.spectrum_worker import SpectrumWorker, TransformOutcome
from config import FRAME_LOG_EVERY, HEARTBEAT_INTERVAL_MS, VisualizerConfig
from dsp import (
    PeakHold,
    compress_spectrum,
    decay_values,
    limit_bins,
    map_bands,
    smooth_spectrum,
    wave_energy,
)
from models import BandMode, SkipReason, SpectrumFrame, frozen_copy
from utils import env_flag

logger = logging.getLogger(__name__)


class PositionProvider(Protocol):
    def current_position_ms(self) -> int: ...
    def is_playing(self) -> bool: ...


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class ScheduleState:
    last_compute_ms: Optional[float] = None
    busy: bool = False
    play_started_ms: Optional[float] = None
    previous: Optional[np.ndarray] = None
    # (kind, band mode, length) of `previous`; kind is "bands", "raw" or "wave"
    previous_key: Optional[tuple] = None
    peak_hold: PeakHold = field(default_factory=PeakHold)
    frame: Optional[SpectrumFrame] = None
    frame_count: int = 0
    generation: int = 0
    last_skip: Optional[SkipReason] = None


@dataclass(frozen=True)
class _RecomputeJob:
    config: VisualizerConfig
    sample_rate: int
    position_ms: int
    generation: int


class SpectrumScheduler:
    """
    Two-speed spectrum update loop.

    Every tick either starts a full recompute (PCM window -> transform ->
    banding -> smoothing), applies a cheap decay to the last result, or does
    nothing. All state lives in `self.state` and is only touched from the
    thread calling tick().
    """

    def __init__(
        self,
        config: Optional[VisualizerConfig] = None,
        worker: Optional[SpectrumWorker] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self._config = (config or VisualizerConfig()).normalized()
        self._worker = worker or SpectrumWorker()
        self._clock = clock
        self._source: Optional[PcmSource] = None
        self._player: Optional[PositionProvider] = None
        self.state = ScheduleState(peak_hold=PeakHold(self._config.peak_hold_step))

    @property
    def config(self) -> VisualizerConfig:
        return self._config

    def set_config(self, config: VisualizerConfig) -> None:
        self._config = config.normalized()
        self.state.peak_hold.step = self._config.peak_hold_step

    @property
    def player(self) -> Optional[PositionProvider]:
        return self._player

    def attach(self, source: Optional[PcmSource], player: Optional[PositionProvider]) -> None:
        self._source = source
        self._player = player
        self.reset()

    def detach(self) -> None:
        self.attach(None, None)

    def mark_playback_started(self, now_ms: Optional[float] = None) -> None:
        self.state.play_started_ms = self._clock() if now_ms is None else float(now_ms)

    def invalidate(self) -> None:
        """Drop whatever the worker is computing right now once it lands."""
        self.state.generation += 1

    def reset(self) -> None:
        st = self.state
        st.last_compute_ms = None
        st.play_started_ms = None
        st.previous = None
        st.previous_key = None
        st.peak_hold.reset()
        st.frame = None
        self.invalidate()

    def shutdown(self) -> None:
        self.invalidate()
        self._worker.shutdown()

    def _skip(self, reason: SkipReason) -> None:
        if reason is not self.state.last_skip and reason in (SkipReason.NOT_READY, SkipReason.INSUFFICIENT_DATA):
            logger.debug("Spectrum tick skipped: %s", reason.name)
        self.state.last_skip = reason
        return None

    def tick(self, now_ms: Optional[float] = None) -> Optional[SpectrumFrame]:
        """Run one scheduler period; returns a frame only when the output changed."""
        now = self._clock() if now_ms is None else float(now_ms)
        cfg = self._config
        st = self.state

        if st.busy:
            outcome = self._worker.poll()
            if outcome is None:
                return self._skip(SkipReason.BUSY)
            st.busy = False
            return self._finish_transform(outcome)

        if not cfg.enabled:
            return self._skip(SkipReason.DISABLED)
        source = self._source
        player = self._player
        if source is None or player is None or not source.ready:
            return self._skip(SkipReason.NOT_READY)

        pos_ms = int(player.current_position_ms())
        if pos_ms <= 0:
            return self._skip(SkipReason.NO_POSITION)

        if st.play_started_ms is None and player.is_playing():
            st.play_started_ms = now
        if st.play_started_ms is not None and now - st.play_started_ms < cfg.safe_start_ms:
            return self._skip(SkipReason.SAFE_START)

        must_recompute = (
            st.last_compute_ms is None
            or now - st.last_compute_ms >= cfg.full_compute_interval_ms
        )
        if must_recompute:
            st.last_compute_ms = now
            end_frame = int(round(pos_ms / 1000.0 * source.sample_rate))
            samples = source.read_window(end_frame, cfg.window_size)
            if samples.size == 0:
                return self._skip(SkipReason.INSUFFICIENT_DATA)
            job = _RecomputeJob(
                config=cfg,
                sample_rate=source.sample_rate,
                position_ms=pos_ms,
                generation=st.generation,
            )
            if cfg.use_fft:
                if self._worker.submit(samples, tag=job):
                    st.busy = True
                return self._skip(SkipReason.BUSY)
            return self._publish(wave_energy(samples), "wave", cfg, pos_ms, recomputed=True)

        if cfg.decay_enabled and st.previous is not None:
            return self._decay(cfg, pos_ms)
        return None

    def _finish_transform(self, outcome: TransformOutcome) -> Optional[SpectrumFrame]:
        job: _RecomputeJob = outcome.tag
        if job is None or job.generation != self.state.generation or not self._config.enabled:
            logger.debug("Discarding stale spectrum result")
            return None
        cfg = job.config
        if not outcome.ok:
            logger.warning(
                "Spectrum transform failed, falling back to wave energy",
                exc_info=outcome.error,
            )
            return self._publish(wave_energy(outcome.samples), "wave", cfg, job.position_ms, recomputed=True)

        if cfg.band_mode is BandMode.OFF:
            return self._publish(compress_spectrum(outcome.spectrum), "raw", cfg, job.position_ms, recomputed=True)

        st = self.state
        previous = None
        if st.previous_key is not None and st.previous_key[:2] == ("bands", cfg.band_mode):
            previous = st.previous
        bands = map_bands(
            outcome.spectrum,
            job.sample_rate,
            mode=cfg.band_mode,
            band_count=cfg.band_count,
            previous=previous,
            alpha=cfg.ema_alpha,
        )
        return self._publish(bands, "bands", cfg, job.position_ms, recomputed=True)

    def _publish(
        self,
        values: np.ndarray,
        kind: str,
        cfg: VisualizerConfig,
        pos_ms: int,
        *,
        recomputed: bool,
        band_mode: Optional[BandMode] = None,
    ) -> SpectrumFrame:
        st = self.state
        banded = kind == "bands"
        if banded and band_mode is None:
            band_mode = cfg.band_mode
        key = (kind, band_mode if banded else None, int(values.shape[0]))
        if recomputed and not banded:
            previous = st.previous if st.previous_key == key else None
            values = smooth_spectrum(previous, values, cfg.smoothing)
        st.previous = values
        st.previous_key = key

        peaks = None
        if banded:
            peaks = st.peak_hold.update(values)
        elif len(st.peak_hold):
            st.peak_hold.reset()

        shown = values if banded else limit_bins(values)
        frame = SpectrumFrame(
            values=frozen_copy(shown),
            peak=float(np.max(shown)) if shown.size else 0.0,
            peaks=frozen_copy(peaks) if peaks is not None else None,
            banded=banded,
            mode="wave" if kind == "wave" else "fft",
            recomputed=recomputed,
            position_ms=pos_ms,
        )
        st.frame = frame
        st.last_skip = None
        st.frame_count += 1
        if st.frame_count % FRAME_LOG_EVERY == 0:
            logger.debug(
                "Frame=%d mode=%s decay=%s ws=%d upd=%d full=%d pos=%.2fs bins=%d peak=%.3f",
                st.frame_count,
                frame.mode.upper(),
                cfg.decay_enabled,
                cfg.window_size,
                cfg.tick_interval_ms,
                cfg.full_compute_interval_ms,
                pos_ms / 1000.0,
                frame.bins,
                frame.peak,
            )
        return frame

    def _decay(self, cfg: VisualizerConfig, pos_ms: int) -> SpectrumFrame:
        st = self.state
        kind = st.previous_key[0] if st.previous_key else "raw"
        decayed = decay_values(st.previous, cfg.decay_factor)
        band_mode = st.previous_key[1] if st.previous_key else None
        return self._publish(decayed, kind, cfg, pos_ms, recomputed=False, band_mode=band_mode)


class SpectrumPoller(QtCore.QObject):
    """Drives a SpectrumScheduler from a QTimer on the GUI thread."""

    frameReady = QtCore.Signal(object)  # SpectrumFrame
    cleared = QtCore.Signal()

    def __init__(
        self,
        scheduler: SpectrumScheduler,
        heartbeat: Optional[bool] = None,
        parent=None,
    ):
        super().__init__(parent)
        self.scheduler = scheduler
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(scheduler.config.tick_interval_ms)
        self._timer.timeout.connect(self._on_timer)
        self._heartbeat_timer: Optional[QtCore.QTimer] = None
        if heartbeat is None:
            heartbeat = env_flag("MUSICVISIO_HEARTBEAT")
        if heartbeat:
            self._heartbeat_timer = QtCore.QTimer(self)
            self._heartbeat_timer.setInterval(HEARTBEAT_INTERVAL_MS)
            self._heartbeat_timer.timeout.connect(self._on_heartbeat)
            self._heartbeat_timer.start()

    def is_active(self) -> bool:
        return self._timer.isActive()

    def start(self) -> None:
        if not self.scheduler.config.enabled:
            logger.info("Visualization master OFF: spectrum disabled.")
            return
        self._timer.setInterval(self.scheduler.config.tick_interval_ms)
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()
        self.scheduler.invalidate()

    def restart(self) -> None:
        # a transform already in flight is still picked up after the restart
        self._timer.stop()
        self.start()

    def set_config(self, config: VisualizerConfig) -> None:
        old = self.scheduler.config
        self.scheduler.set_config(config)
        new = self.scheduler.config
        if old.enabled != new.enabled:
            logger.info("Master visualization=%s", "ON" if new.enabled else "OFF")
            if not new.enabled:
                self.stop()
                self.scheduler.reset()
                self.cleared.emit()
                return
            self.start()
        elif old.tick_interval_ms != new.tick_interval_ms and self._timer.isActive():
            logger.info("Update interval set to %d ms", new.tick_interval_ms)
            self.restart()

    def shutdown(self) -> None:
        self._timer.stop()
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.stop()
        self.scheduler.shutdown()

    @QtCore.Slot()
    def _on_timer(self) -> None:
        try:
            frame = self.scheduler.tick()
        except Exception:
            logger.exception("Spectrum frame error")
            return
        if frame is not None:
            self.frameReady.emit(frame)

    @QtCore.Slot()
    def _on_heartbeat(self) -> None:
        player = self.scheduler.player
        pos_ms = player.current_position_ms() if player is not None else -1
        cfg = self.scheduler.config
        logger.info(
            "HEARTBEAT t=%d posMs=%d vis=%s fft=%s",
            int(time.time() * 1000),
            pos_ms,
            cfg.enabled,
            cfg.use_fft,
        )
