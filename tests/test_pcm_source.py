from __future__ import annotations

import numpy as np
import pytest

import audio.pcm_source as pcm_source
from audio.pcm_source import (
    ArrayPcmSource,
    PcmDecodeError,
    PcmFileSource,
    downmix_to_mono,
    make_ffmpeg_decode_cmd,
)


def _mono_source(n: int = 5) -> ArrayPcmSource:
    src = ArrayPcmSource(np.arange(1, n + 1, dtype=np.float32), sample_rate=8000)
    src.prepare()
    return src


def test_left_padding_near_stream_start():
    out = _mono_source(5).read_window(5, 10)
    assert out.shape == (10,)
    assert out.dtype == np.float32
    assert out[:5].tolist() == [0.0] * 5
    assert out[5:].tolist() == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_full_window_returns_most_recent_samples():
    src = _mono_source(10)
    assert src.read_window(8, 3).tolist() == [6.0, 7.0, 8.0]


def test_end_past_stream_is_clamped():
    src = _mono_source(10)
    assert src.read_window(50, 4).tolist() == [7.0, 8.0, 9.0, 10.0]


def test_stereo_pairs_are_averaged():
    frames = np.array([[1.0, 3.0], [2.0, 4.0], [-1.0, 1.0]], dtype=np.float32)
    src = ArrayPcmSource(frames, sample_rate=8000)
    info = src.prepare()
    assert info.channels == 2
    assert info.total_frames == 3
    assert src.read_window(3, 3).tolist() == [2.0, 3.0, 0.0]


def test_missing_trailing_right_sample_counts_as_zero():
    assert downmix_to_mono(np.array([1.0, 3.0, 5.0], dtype=np.float32), 2).tolist() == [2.0, 2.5]


@pytest.mark.parametrize("end,window", [(0, 10), (5, 0), (-3, 4)])
def test_nothing_available_gives_empty(end, window):
    assert _mono_source(5).read_window(end, window).size == 0


def test_unprepared_and_disposed_sources_give_empty():
    src = ArrayPcmSource(np.ones(16, dtype=np.float32))
    assert not src.ready
    assert src.read_window(8, 4).size == 0
    src.prepare()
    assert src.read_window(8, 4).size == 4
    src.dispose()
    assert not src.ready
    assert src.read_window(8, 4).size == 0
    with pytest.raises(PcmDecodeError):
        src.prepare()


def test_only_mono_or_stereo_supported():
    with pytest.raises(ValueError):
        ArrayPcmSource(np.zeros((4, 3), dtype=np.float32))


def test_ffmpeg_command_requests_float32_pcm():
    cmd = make_ffmpeg_decode_cmd("in.mp3", "out.pcm", 44100, 2)
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "f32le"
    assert cmd[cmd.index("-ar") + 1] == "44100"
    assert cmd[cmd.index("-ac") + 1] == "2"
    assert cmd[-1] == "out.pcm"


def _write_decoded(tmp_path, frames: np.ndarray, sample_rate=44100, channels=2):
    media = tmp_path / "song.mp3"
    media.write_bytes(b"not really audio")
    pcm = tmp_path / f"audio_{sample_rate}_{channels}ch_f32le.pcm"
    pcm.write_bytes(frames.astype("<f4").tobytes())
    return media


def test_file_source_reuses_existing_decode(tmp_path, monkeypatch):
    frames = np.stack([np.linspace(0, 1, 100), np.linspace(0, -1, 100)], axis=1)
    media = _write_decoded(tmp_path, frames)

    def no_ffmpeg(*_args, **_kwargs):
        raise AssertionError("ffmpeg should not run when a decode exists")

    monkeypatch.setattr(pcm_source.subprocess, "run", no_ffmpeg)
    src = PcmFileSource(str(media), 44100, 2, work_dir=str(tmp_path))
    info = src.prepare()
    assert info.total_frames == 100
    assert src.ready

    out = src.read_window(100, 4)
    np.testing.assert_allclose(out, np.zeros(4), atol=1e-6)

    playback = src.frames()
    assert playback.shape == (100, 2)
    np.testing.assert_allclose(playback[-1], [1.0, -1.0], atol=1e-6)

    src.dispose()
    assert not src.ready
    assert src.read_window(100, 4).size == 0
    # caller-provided work dir is left alone
    assert (tmp_path / "audio_44100_2ch_f32le.pcm").exists()


def test_file_source_left_pads_mono_decode(tmp_path):
    media = _write_decoded(tmp_path, np.array([0.25, 0.5, 0.75], dtype=np.float32), channels=1)
    src = PcmFileSource(str(media), 44100, 1, work_dir=str(tmp_path))
    src.prepare()
    assert src.read_window(3, 5).tolist() == [0.0, 0.0, 0.25, 0.5, 0.75]
    src.dispose()


def test_missing_media_file(tmp_path):
    src = PcmFileSource(str(tmp_path / "nope.mp3"), work_dir=str(tmp_path))
    with pytest.raises(PcmDecodeError):
        src.prepare()


def test_missing_ffmpeg_is_reported(tmp_path, monkeypatch):
    media = tmp_path / "song.mp3"
    media.write_bytes(b"x")
    monkeypatch.setattr(pcm_source, "have_exe", lambda _name: False)
    src = PcmFileSource(str(media), work_dir=str(tmp_path))
    with pytest.raises(PcmDecodeError, match="ffmpeg"):
        src.prepare()


def test_failed_decode_includes_exit_code(tmp_path, monkeypatch):
    media = tmp_path / "song.mp3"
    media.write_bytes(b"x")

    class Result:
        returncode = 1
        stderr = "Invalid data found when processing input"

    monkeypatch.setattr(pcm_source, "have_exe", lambda _name: True)
    monkeypatch.setattr(pcm_source.subprocess, "run", lambda *a, **k: Result())
    src = PcmFileSource(str(media), work_dir=str(tmp_path))
    with pytest.raises(PcmDecodeError, match="exit code 1"):
        src.prepare()
    assert not src.ready


def test_prepare_twice_closes_previous_handle(tmp_path):
    frames = np.stack([np.linspace(0, 1, 50), np.linspace(0, -1, 50)], axis=1)
    media = _write_decoded(tmp_path, frames)
    src = PcmFileSource(str(media), 44100, 2, work_dir=str(tmp_path))
    src.prepare()
    first = src._fh
    src.prepare()
    assert first.closed
    assert not src._fh.closed
    assert src.read_window(50, 2).size == 2
    src.dispose()
