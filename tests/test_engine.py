from __future__ import annotations

import numpy as np
import pytest

from audio.engine import PlayerEngine
from audio.pcm_source import ArrayPcmSource
from conftest import sine
from models import PlayerState, Track


@pytest.fixture
def engine(qapp):
    eng = PlayerEngine()
    yield eng
    eng.unload()


def _loaded(engine, seconds=2.0):
    source = ArrayPcmSource(np.stack([sine(440.0, seconds=seconds)] * 2, axis=1))
    source.prepare()
    track = Track.from_path("/music/tone.wav")
    durations = []
    engine.durationChanged.connect(lambda d: durations.append(d))
    engine.load(track, source)
    return track, durations


def test_stopped_engine_reports_no_position(engine):
    assert engine.current_position_ms() == 0
    assert not engine.is_playing()
    assert engine.state is PlayerState.STOPPED


def test_load_reports_track_and_duration(engine):
    track, durations = _loaded(engine)
    assert engine.track is track
    assert track.title == "tone"
    assert track.duration_sec == pytest.approx(2.0)
    assert durations == [pytest.approx(2.0)]
    assert engine.channels == 2
    assert engine.sample_rate == 44100


def test_load_rejects_unprepared_source(engine):
    errors = []
    engine.errorOccurred.connect(lambda msg: errors.append(msg))
    engine.load(Track.from_path("x.wav"), ArrayPcmSource(np.zeros(16, dtype=np.float32)))
    assert engine.state is PlayerState.ERROR
    assert errors and "x.wav" in errors[0]


def test_seek_is_clamped_to_track(engine):
    _loaded(engine)
    engine.seek(1.5)
    assert engine.get_position() == pytest.approx(1.5)
    engine.seek(10.0)
    assert engine.get_position() == pytest.approx(2.0)
    engine.seek(-1.0)
    assert engine.get_position() == 0.0


def test_pause_without_playback_is_ignored(engine):
    _loaded(engine)
    engine.pause()
    assert engine.state is PlayerState.STOPPED


def test_volume_is_clamped(engine):
    engine.set_volume(3.0)
    assert engine._volume == 1.0
    engine.set_volume(-1.0)
    assert engine._volume == 0.0


def test_paused_position_does_not_subtract_output_latency(engine):
    _loaded(engine)
    engine.seek(1.0)
    # stands in for a running output stream
    engine._set_state(PlayerState.PLAYING)
    latency = engine.get_output_latency_seconds()
    assert latency > 0.0
    assert engine.current_position_ms() == int((1.0 - latency) * 1000.0)

    engine.pause()
    assert engine.state is PlayerState.PAUSED
    assert engine.current_position_ms() == 1000
