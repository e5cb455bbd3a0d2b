from __future__ import annotations

import numpy as np
import pytest

from audio.scheduler import SpectrumPoller, SpectrumScheduler
from audio.spectrum_worker import SpectrumWorker
from config import VisualizerConfig
from conftest import CountingSource, FakePlayer, HeldExecutor, ImmediateExecutor, sine
from dsp import magnitude_spectrum
from models import BandMode, SkipReason

SAFE_START_MS = 1200


def make_scheduler(executor=None, transform=magnitude_spectrum, pos_ms=500, clock=lambda: 0.0, **cfg):
    executor = executor or ImmediateExecutor()
    worker = SpectrumWorker(transform=transform, executor=executor)
    sched = SpectrumScheduler(VisualizerConfig(**cfg), worker=worker, clock=clock)
    source = CountingSource(sine(440.0))
    source.prepare()
    player = FakePlayer(pos_ms=pos_ms)
    sched.attach(source, player)
    sched.mark_playback_started(0)
    return sched, source, player, executor


def run_until_frame(sched, start_ms, step_ms=60, limit=10):
    now = start_ms
    for _ in range(limit):
        frame = sched.tick(now)
        if frame is not None:
            return frame, now
        now += step_ms
    raise AssertionError("no frame produced")


def test_safe_start_delay_blocks_recompute():
    sched, source, _, _ = make_scheduler()
    assert sched.tick(100) is None
    assert sched.state.last_skip is SkipReason.SAFE_START
    assert sched.tick(SAFE_START_MS - 1) is None
    assert source.reads == 0


def test_skips_without_source_or_player():
    sched = SpectrumScheduler(VisualizerConfig(), worker=SpectrumWorker(executor=ImmediateExecutor()))
    assert sched.tick(5000) is None
    assert sched.state.last_skip is SkipReason.NOT_READY

    unprepared = CountingSource(sine(440.0))
    sched.attach(unprepared, FakePlayer())
    assert sched.tick(5000) is None
    assert sched.state.last_skip is SkipReason.NOT_READY


def test_skips_without_position():
    sched, source, player, _ = make_scheduler(pos_ms=0)
    assert sched.tick(2000) is None
    assert sched.state.last_skip is SkipReason.NO_POSITION
    assert source.reads == 0


def test_disabled_visualization_does_nothing():
    sched, source, _, executor = make_scheduler(enabled=False)
    assert sched.tick(2000) is None
    assert sched.state.last_skip is SkipReason.DISABLED
    assert source.reads == 0
    assert executor.submitted == 0


def test_playback_start_is_marked_on_first_playing_tick():
    sched, source, player, _ = make_scheduler()
    sched.reset()
    assert sched.tick(10_000) is None
    assert sched.state.play_started_ms == 10_000
    assert sched.state.last_skip is SkipReason.SAFE_START
    assert sched.tick(10_000 + SAFE_START_MS) is None
    assert source.reads == 1


def test_fft_recompute_produces_banded_frame():
    sched, source, _, executor = make_scheduler()
    assert sched.tick(1300) is None
    assert sched.state.last_skip is SkipReason.BUSY
    assert sched.state.busy

    frame = sched.tick(1360)
    assert frame is not None
    assert not sched.state.busy
    assert frame.banded
    assert frame.mode == "fft"
    assert frame.recomputed
    assert frame.bins == 32
    assert frame.peaks is not None and frame.peaks.shape == (32,)
    assert np.all((frame.values >= 0.0) & (frame.values <= 1.0))
    assert frame.peak == pytest.approx(float(frame.values.max()))
    assert not frame.values.flags.writeable
    assert executor.submitted == 1
    assert source.reads == 1


def test_decay_between_recomputes_reads_no_pcm():
    sched, source, _, _ = make_scheduler()
    sched.tick(1300)
    first = sched.tick(1360)

    decayed = sched.tick(1420)
    assert decayed is not None
    assert not decayed.recomputed
    assert decayed.banded
    np.testing.assert_allclose(decayed.values, first.values * 0.985, rtol=1e-5, atol=1e-7)
    assert source.reads == 1

    # peak-hold keeps stepping down on decay frames
    assert np.all(decayed.peaks <= first.peaks + 1e-7)


def test_no_decay_means_no_frame_between_recomputes():
    sched, source, _, _ = make_scheduler(decay_enabled=False)
    sched.tick(1300)
    assert sched.tick(1360) is not None
    assert sched.tick(1420) is None
    assert source.reads == 1


def test_recompute_is_due_after_full_interval():
    sched, source, _, executor = make_scheduler()
    sched.tick(1300)
    sched.tick(1360)
    sched.tick(1420)
    sched.tick(1550)  # 250 ms after the last full compute
    assert executor.submitted == 2
    assert source.reads == 2


def test_no_overlapping_transforms_while_busy():
    executor = HeldExecutor()
    sched, source, _, _ = make_scheduler(executor=executor)
    assert sched.tick(1300) is None
    for now in (1360, 1420, 1600, 2000):
        assert sched.tick(now) is None
        assert sched.state.last_skip is SkipReason.BUSY
    assert executor.submitted == 1
    assert source.reads == 1

    executor.release()
    frame = sched.tick(2060)
    assert frame is not None and frame.recomputed
    assert not sched.state.busy


def test_transform_failure_falls_back_to_wave_energy():
    def broken(_samples):
        raise RuntimeError("transform exploded")

    sched, _, _, _ = make_scheduler(transform=broken)
    sched.tick(1300)
    frame = sched.tick(1360)
    assert frame is not None
    assert frame.mode == "wave"
    assert not frame.banded
    assert frame.peaks is None
    assert frame.bins == 256


def test_disabling_discards_in_flight_result():
    executor = HeldExecutor()
    sched, _, _, _ = make_scheduler(executor=executor)
    sched.tick(1300)
    sched.set_config(sched.config.updated(enabled=False))
    executor.release()
    assert sched.tick(1360) is None
    assert not sched.state.busy
    assert sched.state.frame is None


def test_invalidate_drops_stale_result():
    executor = HeldExecutor()
    sched, _, _, _ = make_scheduler(executor=executor)
    sched.tick(1300)
    sched.invalidate()
    executor.release()
    assert sched.tick(1360) is None
    assert sched.state.frame is None


def test_wave_mode_publishes_without_worker():
    sched, source, _, executor = make_scheduler(use_fft=False)
    frame = sched.tick(1300)
    assert frame is not None
    assert frame.mode == "wave"
    assert frame.bins == 256
    assert executor.submitted == 0
    assert source.reads == 1


def test_raw_mode_end_to_end_peak_at_440hz():
    sched, _, _, _ = make_scheduler(band_mode=BandMode.OFF, window_size=512, pos_ms=500)
    frame, _ = run_until_frame(sched, 1300)
    assert not frame.banded
    assert frame.peaks is None
    assert frame.bins == 256
    expected_bin = 440.0 / (44100 / 512)
    assert abs(int(np.argmax(frame.values)) - expected_bin) <= 1.0


def test_band_count_change_resets_history():
    sched, _, _, _ = make_scheduler()
    sched.tick(1300)
    assert sched.tick(1360).bins == 32

    sched.set_config(sched.config.updated(band_count=16))
    frame, _ = run_until_frame(sched, 1600)
    assert frame.recomputed
    assert frame.bins == 16
    assert frame.peaks.shape == (16,)


def test_switching_to_raw_clears_peak_hold():
    sched, _, _, _ = make_scheduler()
    sched.tick(1300)
    sched.tick(1360)
    assert len(sched.state.peak_hold) == 32

    sched.set_config(sched.config.updated(band_mode=BandMode.OFF))
    frame, _ = run_until_frame(sched, 1600)
    assert not frame.banded
    assert len(sched.state.peak_hold) == 0


def test_poller_master_switch_and_frames(qapp):
    sched, _, _, _ = make_scheduler(use_fft=False, clock=lambda: 1300.0)
    poller = SpectrumPoller(sched, heartbeat=False)
    frames = []
    cleared = []
    poller.frameReady.connect(lambda frame: frames.append(frame))
    poller.cleared.connect(lambda: cleared.append(True))

    poller.start()
    assert poller.is_active()

    poller._on_timer()
    assert len(frames) == 1
    assert frames[0].mode == "wave"

    poller.set_config(sched.config.updated(enabled=False))
    assert not poller.is_active()
    assert cleared == [True]
    assert sched.state.frame is None

    poller.start()
    assert not poller.is_active()

    poller.set_config(sched.config.updated(enabled=True))
    assert poller.is_active()
    poller.shutdown()
    assert not poller.is_active()


def test_interval_change_keeps_in_flight_transform(qapp):
    executor = HeldExecutor()
    sched, _, _, _ = make_scheduler(executor=executor, clock=lambda: 1300.0)
    poller = SpectrumPoller(sched, heartbeat=False)
    frames = []
    poller.frameReady.connect(lambda frame: frames.append(frame))

    poller.start()
    poller._on_timer()
    assert executor.submitted == 1
    assert sched.state.busy

    poller.set_config(sched.config.updated(tick_interval_ms=100))
    assert poller.is_active()
    assert poller._timer.interval() == 100

    executor.release()
    poller._on_timer()
    assert len(frames) == 1
    assert frames[0].recomputed and frames[0].mode == "fft"
    assert sched.state.frame is frames[0]
    poller.shutdown()
