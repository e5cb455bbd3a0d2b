from __future__ import annotations

import math
from functools import lru_cache
from typing import Optional

import numpy as np

from config import MAX_DISPLAY_BINS, PEAK_HOLD_STEP, SPECTRUM_SMOOTHING, WAVE_BANDS
from models import BandMode
from utils import next_pow2

# Standard 1/3-octave centers (Hz)
ISO_CENTERS = (
    20.0, 25.0, 31.5, 40.0, 50.0, 63.0, 80.0, 100.0, 125.0, 160.0,
    200.0, 250.0, 315.0, 400.0, 500.0, 630.0, 800.0, 1000.0, 1250.0, 1600.0,
    2000.0, 2500.0, 3150.0, 4000.0, 5000.0, 6300.0, 8000.0, 10000.0, 12500.0, 16000.0,
    20000.0,
)

MIN_FREQ_HZ = 20.0
MAX_FREQ_HZ = 20000.0
DB_FLOOR = -60.0
POWER_EPS = 1e-12
RAW_LOG_GAIN = 50.0
WAVE_LOG_GAIN = 20.0


class TransformError(ValueError):
    pass


# -----------------------------
# Spectral transform
# -----------------------------

def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window, w[i] = 0.5 * (1 - cos(2*pi*i / (n - 1)))."""
    if n <= 0:
        return np.zeros(0, dtype=np.float64)
    if n == 1:
        return np.ones(1, dtype=np.float64)
    return np.hanning(n)


@lru_cache(maxsize=16)
def _bit_reverse_indices(size: int) -> np.ndarray:
    rev = np.zeros(size, dtype=np.intp)
    j = 0
    for i in range(size):
        rev[i] = j
        bit = size >> 1
        while bit and j & bit:
            j &= ~bit
            bit >>= 1
        j |= bit
    rev.setflags(write=False)
    return rev


@lru_cache(maxsize=32)
def _stage_twiddles(length: int) -> tuple[np.ndarray, np.ndarray]:
    # rotate by -2*pi/length per step instead of calling cos/sin per butterfly
    half = length >> 1
    theta = -2.0 * math.pi / length
    step_cos = math.cos(theta)
    step_sin = math.sin(theta)
    w_re = np.empty(half, dtype=np.float64)
    w_im = np.empty(half, dtype=np.float64)
    w_cos = 1.0
    w_sin = 0.0
    for k in range(half):
        w_re[k] = w_cos
        w_im[k] = w_sin
        w_cos, w_sin = (
            w_cos * step_cos - w_sin * step_sin,
            w_cos * step_sin + w_sin * step_cos,
        )
    w_re.setflags(write=False)
    w_im.setflags(write=False)
    return w_re, w_im


def fft_radix2(real: np.ndarray, imag: np.ndarray) -> None:
    """
    In-place iterative radix-2 Cooley-Tukey FFT.

    real, imag: contiguous float64 arrays of the same power-of-two length.
    Each stage runs its butterflies for all groups at once on reshaped views.
    """
    size = real.shape[0]
    if imag.shape[0] != size:
        raise TransformError(f"real/imag length mismatch: {size} vs {imag.shape[0]}")
    if size <= 1:
        return
    if size & (size - 1):
        raise TransformError(f"FFT size must be a power of two, got {size}")
    if not (real.flags.c_contiguous and imag.flags.c_contiguous):
        raise TransformError("FFT buffers must be contiguous")

    rev = _bit_reverse_indices(size)
    real[:] = real[rev]
    imag[:] = imag[rev]

    length = 2
    while length <= size:
        half = length >> 1
        w_re, w_im = _stage_twiddles(length)
        re = real.reshape(-1, length)
        im = imag.reshape(-1, length)
        top_re = re[:, :half]
        top_im = im[:, :half]
        bot_re = re[:, half:]
        bot_im = im[:, half:]
        t_re = w_re * bot_re - w_im * bot_im
        t_im = w_re * bot_im + w_im * bot_re
        bot_re[...] = top_re - t_re
        bot_im[...] = top_im - t_im
        top_re += t_re
        top_im += t_im
        length <<= 1


def magnitude_spectrum(samples: np.ndarray) -> np.ndarray:
    """
    Hann-windowed magnitude spectrum of a real buffer.

    Input of length N is zero-padded to M = next_pow2(N); output has M/2 bins,
    scaled by 1/(M/2).
    """
    x = np.asarray(samples, dtype=np.float64)
    if x.ndim != 1:
        raise TransformError(f"expected a 1-D sample buffer, got shape {x.shape}")
    if x.size == 0:
        raise TransformError("empty sample buffer")
    if not np.all(np.isfinite(x)):
        raise TransformError("sample buffer contains non-finite values")

    n = x.shape[0]
    size = next_pow2(n)
    real = np.zeros(size, dtype=np.float64)
    imag = np.zeros(size, dtype=np.float64)
    real[:n] = x * hann_window(n)

    fft_radix2(real, imag)

    half = size >> 1
    mags = np.sqrt(real[:half] ** 2 + imag[:half] ** 2) / (size / 2.0)
    return mags.astype(np.float32)


def compress_spectrum(spectrum: np.ndarray) -> np.ndarray:
    """Log-compress raw magnitudes into roughly [0,1] for the unbanded display."""
    v = np.maximum(np.asarray(spectrum, dtype=np.float64), 0.0)
    out = np.log1p(v * RAW_LOG_GAIN) / math.log1p(RAW_LOG_GAIN)
    return np.clip(out, 0.0, 1.0).astype(np.float32)


# -----------------------------
# Wave-energy fallback
# -----------------------------

def wave_energy(samples: np.ndarray, bands: int = WAVE_BANDS) -> np.ndarray:
    x = np.abs(np.asarray(samples, dtype=np.float64).reshape(-1))
    size = x.shape[0]
    per_band = max(1, size // bands)
    out = np.zeros(bands, dtype=np.float32)
    for b in range(bands):
        start = b * per_band
        end = size if b == bands - 1 else min(size, start + per_band)
        if end > start:
            avg = float(np.mean(x[start:end]))
            out[b] = math.log1p(avg * WAVE_LOG_GAIN) / math.log1p(WAVE_LOG_GAIN)
    return out


# -----------------------------
# Perceptual banding
# -----------------------------

def log_band_edges(
    band_count: int,
    sample_rate: int,
    min_freq: float = MIN_FREQ_HZ,
    max_freq: float = MAX_FREQ_HZ,
) -> np.ndarray:
    """(band_count, 2) array of [f0, f1) edges, log-spaced from min_freq to min(max_freq, nyquist)."""
    nyquist = sample_rate / 2.0
    f_max = min(max_freq, nyquist)
    log_min = math.log(min_freq)
    log_max = math.log(max(f_max, min_freq))
    edges = np.zeros((max(0, band_count), 2), dtype=np.float64)
    for b in range(band_count):
        edges[b, 0] = math.exp(log_min + (log_max - log_min) * b / band_count)
        edges[b, 1] = math.exp(log_min + (log_max - log_min) * (b + 1) / band_count)
    return edges


def iso_centers(sample_rate: int) -> np.ndarray:
    nyquist = sample_rate / 2.0
    return np.array([c for c in ISO_CENTERS if c < nyquist], dtype=np.float64)


def iso_band_edges(sample_rate: int) -> np.ndarray:
    centers = iso_centers(sample_rate)
    count = centers.shape[0]
    edges = np.zeros((count, 2), dtype=np.float64)
    if count == 0:
        return edges
    sixth = 2.0 ** (1.0 / 6.0)
    bounds = np.sqrt(centers[:-1] * centers[1:])
    edges[0, 0] = max(MIN_FREQ_HZ, centers[0] / sixth)
    edges[1:, 0] = bounds
    edges[:-1, 1] = bounds
    edges[-1, 1] = min(MAX_FREQ_HZ, centers[-1] * sixth)
    return edges


def band_edges(mode: BandMode, band_count: int, sample_rate: int) -> np.ndarray:
    if mode is BandMode.LOG:
        return log_band_edges(band_count, sample_rate)
    if mode is BandMode.ISO:
        return iso_band_edges(sample_rate)
    raise ValueError(f"no band layout for mode {mode}")


def _edge_to_bin(freq: float, nyquist: float, num_bins: int, upper: bool) -> int:
    # unclamped; callers decide what an out-of-range edge means
    pos = (freq / nyquist) * (num_bins - 1)
    return int(math.ceil(pos) if upper else math.floor(pos))


def band_power(spectrum: np.ndarray, sample_rate: int, edges: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Mean power (magnitude^2) over the inclusive bin range of each band.

    Returns (power, valid); bands whose range is empty are marked invalid.
    """
    mags = np.asarray(spectrum, dtype=np.float64)
    num_bins = mags.shape[0]
    count = edges.shape[0]
    power = np.zeros(count, dtype=np.float64)
    valid = np.zeros(count, dtype=bool)
    if num_bins == 0 or sample_rate <= 0:
        return power, valid
    nyquist = sample_rate / 2.0
    last = num_bins - 1
    bin_power = mags * mags
    for b in range(count):
        bin0 = _edge_to_bin(edges[b, 0], nyquist, num_bins, upper=False)
        bin1 = _edge_to_bin(edges[b, 1], nyquist, num_bins, upper=True)
        if bin1 < bin0 or bin0 > last or bin1 < 0:
            continue
        bin0 = max(bin0, 0)
        bin1 = min(bin1, last)
        power[b] = float(np.mean(bin_power[bin0:bin1 + 1]))
        valid[b] = True
    return power, valid


def normalize_power_db(power: np.ndarray) -> np.ndarray:
    """Map power to [0,1] over -60..0 dBFS."""
    db = 10.0 * np.log10(np.asarray(power, dtype=np.float64) + POWER_EPS)
    return np.clip((db - DB_FLOOR) / -DB_FLOOR, 0.0, 1.0)


def ema_blend(previous: Optional[np.ndarray], current: np.ndarray, alpha: float) -> np.ndarray:
    if previous is None or len(previous) != len(current):
        return np.array(current, dtype=np.float64, copy=True)
    prev = np.asarray(previous, dtype=np.float64)
    return prev * alpha + np.asarray(current, dtype=np.float64) * (1.0 - alpha)


def map_bands(
    spectrum: np.ndarray,
    sample_rate: int,
    mode: BandMode = BandMode.LOG,
    band_count: int = 32,
    previous: Optional[np.ndarray] = None,
    alpha: float = 0.6,
) -> np.ndarray:
    edges = band_edges(mode, band_count, sample_rate)
    power, valid = band_power(spectrum, sample_rate, edges)
    norm = normalize_power_db(power)
    out = ema_blend(previous, norm, alpha)
    # empty bins never blend against stale data
    out[~valid] = 0.0
    return np.clip(out, 0.0, 1.0).astype(np.float32)


# -----------------------------
# Temporal smoothing / decay / peak-hold
# -----------------------------

def smooth_spectrum(
    previous: Optional[np.ndarray],
    current: np.ndarray,
    smoothing: float = SPECTRUM_SMOOTHING,
) -> np.ndarray:
    return ema_blend(previous, current, smoothing).astype(np.float32)


def decay_values(values: np.ndarray, factor: float) -> np.ndarray:
    v = np.asarray(values, dtype=np.float32) * np.float32(factor)
    return np.clip(v, 0.0, 1.0).astype(np.float32)


def limit_bins(values: np.ndarray, max_bins: int = MAX_DISPLAY_BINS) -> np.ndarray:
    if values.shape[0] > max_bins:
        return values[:max_bins]
    return values


class PeakHold:
    """
    Per-band maximum tracker.

    update(values): snaps up to any value above the held peak, otherwise
    lowers the peak by `step`, floored at 0.
    """

    def __init__(self, step: float = PEAK_HOLD_STEP):
        self.step = float(step)
        self._peaks = np.zeros(0, dtype=np.float64)

    def __len__(self) -> int:
        return int(self._peaks.shape[0])

    @property
    def peaks(self) -> np.ndarray:
        return self._peaks.astype(np.float32)

    def reset(self) -> None:
        self._peaks = np.zeros(0, dtype=np.float64)

    def resize(self, n: int) -> None:
        n = max(0, int(n))
        current = self._peaks.shape[0]
        if n == current:
            return
        if n < current:
            self._peaks = self._peaks[:n].copy()
        else:
            self._peaks = np.concatenate((self._peaks, np.zeros(n - current, dtype=np.float64)))

    def update(self, values: np.ndarray) -> np.ndarray:
        v = np.clip(np.asarray(values, dtype=np.float64), 0.0, 1.0)
        self.resize(v.shape[0])
        lowered = np.maximum(self._peaks - self.step, 0.0)
        self._peaks = np.where(v > self._peaks, v, lowered)
        return self.peaks
