from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import BinaryIO, List, Optional

import numpy as np

from config import DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE
from models import PcmInfo
from utils import have_exe

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 4  # float32


class PcmDecodeError(RuntimeError):
    pass


def make_ffmpeg_decode_cmd(path: str, out_path: str, sample_rate: int, channels: int) -> List[str]:
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "error",
        "-y",
        "-i", path,
        "-vn",
        "-f", "f32le",
        "-acodec", "pcm_f32le",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        out_path,
    ]


def downmix_to_mono(interleaved: np.ndarray, channels: int) -> np.ndarray:
    """Average L/R pairs of interleaved float32 data; a missing trailing right sample counts as 0.0."""
    data = np.asarray(interleaved, dtype=np.float32).reshape(-1)
    if channels == 1:
        return data.copy()
    if data.shape[0] % 2:
        data = np.concatenate((data, np.zeros(1, dtype=np.float32)))
    pairs = data.reshape(-1, 2)
    return ((pairs[:, 0] + pairs[:, 1]) * np.float32(0.5)).astype(np.float32)


class PcmSource:
    """
    Time-addressed access to decoded float32 PCM.

    prepare() -> PcmInfo
    read_window(end_frame, window_frames): most recent mono samples before
    end_frame, exactly window_frames long (left zero-padded), or empty
    when nothing can be read.
    """

    def __init__(self, sample_rate: int, channels: int):
        if channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {channels}")
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.total_frames = 0
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def info(self) -> PcmInfo:
        return PcmInfo(self.sample_rate, self.channels, self.total_frames)

    def prepare(self) -> PcmInfo:
        raise NotImplementedError

    def dispose(self) -> None:
        raise NotImplementedError

    def frames(self) -> Optional[np.ndarray]:
        """(n, channels) float32 view over the whole decode, for playback."""
        raise NotImplementedError

    def _read_interleaved(self, start_frame: int, frame_count: int) -> np.ndarray:
        raise NotImplementedError

    def read_window(self, end_frame: int, window_frames: int) -> np.ndarray:
        if not self._ready or window_frames <= 0:
            return np.zeros(0, dtype=np.float32)
        end_frame = min(int(end_frame), self.total_frames)
        start_frame = max(0, end_frame - window_frames)
        frames_available = min(window_frames, end_frame - start_frame)
        if frames_available <= 0:
            return np.zeros(0, dtype=np.float32)

        try:
            raw = self._read_interleaved(start_frame, frames_available)
        except (OSError, ValueError) as e:
            logger.debug("PCM read failed at frame %d: %s", start_frame, e)
            return np.zeros(0, dtype=np.float32)
        mono = downmix_to_mono(raw, self.channels)
        if mono.shape[0] == 0:
            return mono

        if mono.shape[0] < window_frames:
            padded = np.zeros(window_frames, dtype=np.float32)
            padded[window_frames - mono.shape[0]:] = mono
            return padded
        return mono[:window_frames]


class ArrayPcmSource(PcmSource):
    """PcmSource over an in-memory (n,) or (n, ch) float array."""

    def __init__(self, samples: np.ndarray, sample_rate: int = DEFAULT_SAMPLE_RATE):
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.ndim != 2:
            raise ValueError(f"samples must be (n,) or (n, ch), got {data.shape}")
        super().__init__(sample_rate, data.shape[1])
        self._data: Optional[np.ndarray] = np.ascontiguousarray(data)

    def prepare(self) -> PcmInfo:
        if self._data is None:
            raise PcmDecodeError("source has been disposed")
        self.total_frames = int(self._data.shape[0])
        self._ready = True
        return self.info

    def dispose(self) -> None:
        self._ready = False
        self._data = None

    def frames(self) -> Optional[np.ndarray]:
        return self._data

    def _read_interleaved(self, start_frame: int, frame_count: int) -> np.ndarray:
        if self._data is None:
            raise ValueError("source has been disposed")
        return self._data[start_frame:start_frame + frame_count].reshape(-1)


class PcmFileSource(PcmSource):
    """
    Decodes a media file with ffmpeg into a temporary f32le file and serves
    random-access reads from it.
    """

    def __init__(
        self,
        media_path: str,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        work_dir: Optional[str] = None,
    ):
        super().__init__(sample_rate, channels)
        self.media_path = media_path
        self._work_dir = work_dir
        self._owns_work_dir = work_dir is None
        self._pcm_path: Optional[str] = None
        self._fh: Optional[BinaryIO] = None
        self._lock = threading.Lock()
        self._memmap: Optional[np.memmap] = None

    @property
    def pcm_path(self) -> Optional[str]:
        return self._pcm_path

    def _decode(self, pcm_path: str) -> None:
        if not have_exe("ffmpeg"):
            raise PcmDecodeError(
                "ffmpeg executable not found in PATH.\n"
                "Install FFmpeg and add its bin folder to PATH."
            )
        cmd = make_ffmpeg_decode_cmd(self.media_path, pcm_path, self.sample_rate, self.channels)
        logger.info("Decoding %s -> %s", self.media_path, pcm_path)
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            try:
                os.remove(pcm_path)
            except OSError:
                pass
            raise PcmDecodeError(
                f"ffmpeg decode failed (exit code {result.returncode})\n"
                f"STDERR: {result.stderr.strip()}"
            )

    def prepare(self) -> PcmInfo:
        if not os.path.exists(self.media_path):
            raise PcmDecodeError(f"File not found: {self.media_path}")
        if self._work_dir is None:
            self._work_dir = tempfile.mkdtemp(prefix="music_visio_pcm_")
        pcm_path = os.path.join(
            self._work_dir,
            f"audio_{self.sample_rate}_{self.channels}ch_f32le.pcm",
        )
        if not os.path.exists(pcm_path):
            self._decode(pcm_path)
        else:
            logger.debug("Reusing decoded PCM %s", pcm_path)

        size = os.path.getsize(pcm_path)
        bytes_per_frame = BYTES_PER_SAMPLE * self.channels
        with self._lock:
            stale = self._fh
            self._pcm_path = pcm_path
            self._fh = open(pcm_path, "rb")
            self._memmap = None
            self.total_frames = size // bytes_per_frame
            self._ready = True
        if stale is not None:
            stale.close()
        logger.info(
            "PCM ready: %d Hz, ch=%d, totalFrames=%d",
            self.sample_rate,
            self.channels,
            self.total_frames,
        )
        return self.info

    def frames(self) -> Optional[np.ndarray]:
        if not self._ready or self._pcm_path is None or self.total_frames <= 0:
            return None
        if self._memmap is None:
            self._memmap = np.memmap(
                self._pcm_path,
                dtype="<f4",
                mode="r",
                shape=(self.total_frames, self.channels),
            )
        return self._memmap

    def _read_interleaved(self, start_frame: int, frame_count: int) -> np.ndarray:
        bytes_per_frame = BYTES_PER_SAMPLE * self.channels
        with self._lock:
            if self._fh is None:
                raise ValueError("PCM file is closed")
            self._fh.seek(start_frame * bytes_per_frame)
            buf = self._fh.read(frame_count * bytes_per_frame)
        usable = len(buf) - (len(buf) % BYTES_PER_SAMPLE)
        return np.frombuffer(buf[:usable], dtype="<f4").astype(np.float32)

    def dispose(self) -> None:
        with self._lock:
            self._ready = False
            fh = self._fh
            self._fh = None
        self._memmap = None
        if fh is not None:
            try:
                fh.close()
            except OSError as e:
                logger.debug("Closing PCM file failed: %s", e)
        if self._owns_work_dir and self._work_dir and os.path.isdir(self._work_dir):
            shutil.rmtree(self._work_dir, ignore_errors=True)
            self._work_dir = None
