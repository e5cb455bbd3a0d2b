from __future__ import annotations

from concurrent.futures import Executor, Future

import numpy as np
import pytest
from PySide6 import QtCore

from audio.pcm_source import ArrayPcmSource


@pytest.fixture(scope="session")
def qapp():
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    yield app


def sine(freq_hz: float, sample_rate: int = 44100, seconds: float = 2.0, amplitude: float = 0.8) -> np.ndarray:
    t = np.arange(int(sample_rate * seconds)) / float(sample_rate)
    return (amplitude * np.sin(2.0 * np.pi * freq_hz * t)).astype(np.float32)


class FakePlayer:
    def __init__(self, pos_ms: int = 500, playing: bool = True):
        self.pos_ms = pos_ms
        self.playing = playing

    def current_position_ms(self) -> int:
        return self.pos_ms

    def is_playing(self) -> bool:
        return self.playing


class CountingSource(ArrayPcmSource):
    def __init__(self, samples, sample_rate=44100):
        super().__init__(samples, sample_rate)
        self.reads = 0

    def read_window(self, end_frame, window_frames):
        self.reads += 1
        return super().read_window(end_frame, window_frames)


class ImmediateExecutor(Executor):
    """Runs each job inline and hands back an already-finished future."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class HeldExecutor(Executor):
    """Keeps the submitted job pending until release() is called."""

    def __init__(self):
        self.submitted = 0
        self._pending = []

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        self._pending.append((future, fn, args, kwargs))
        return future

    def release(self):
        pending, self._pending = self._pending, []
        for future, fn, args, kwargs in pending:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
