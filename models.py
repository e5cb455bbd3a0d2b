from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class PcmInfo:
    sample_rate: int
    channels: int
    total_frames: int

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.total_frames / float(self.sample_rate)


@dataclass
class Track:
    path: str
    title: str
    duration_sec: float = 0.0

    @classmethod
    def from_path(cls, path: str) -> "Track":
        title = os.path.splitext(os.path.basename(path))[0]
        return cls(path=path, title=title)


class PlayerState(Enum):
    STOPPED = auto()
    PLAYING = auto()
    PAUSED = auto()
    ERROR = auto()


class BandMode(Enum):
    OFF = "off"
    LOG = "log"
    ISO = "iso"

    @classmethod
    def from_setting(cls, value: str) -> "BandMode":
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.LOG


class SkipReason(Enum):
    DISABLED = auto()
    BUSY = auto()
    NOT_READY = auto()
    NO_POSITION = auto()
    SAFE_START = auto()
    INSUFFICIENT_DATA = auto()


@dataclass(frozen=True)
class SpectrumFrame:
    """
    Immutable snapshot handed to renderers once per changed tick.

    values: normalized [0,1] bars (bands, raw bins or wave energy)
    peak: max of values
    peaks: per-band peak-hold values, banded mode only
    """
    values: np.ndarray
    peak: float
    peaks: Optional[np.ndarray] = None
    banded: bool = False
    mode: str = "fft"
    recomputed: bool = True
    position_ms: int = 0

    @property
    def bins(self) -> int:
        return int(self.values.shape[0])


def frozen_copy(values: np.ndarray) -> np.ndarray:
    out = np.array(values, dtype=np.float32, copy=True)
    out.setflags(write=False)
    return out
