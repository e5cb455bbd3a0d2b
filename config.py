from __future__ import annotations

from dataclasses import dataclass, replace

from models import BandMode
from utils import clamp

SETTINGS_ORG = "MusicVisio"
SETTINGS_APP = "MusicVisio"

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_CHANNELS = 2

WINDOW_SIZES = (256, 512, 1024)
DEFAULT_WINDOW_SIZE = 512

TICK_INTERVAL_RANGE_MS = (20, 150)
DEFAULT_TICK_INTERVAL_MS = 60
FULL_COMPUTE_RANGE_MS = (150, 1000)
DEFAULT_FULL_COMPUTE_MS = 250
DEFAULT_SAFE_START_MS = 1200

DECAY_FACTOR_RANGE = (0.90, 0.995)
DEFAULT_DECAY_FACTOR = 0.985
EMA_ALPHA_RANGE = (0.1, 0.9)
DEFAULT_EMA_ALPHA = 0.6
BAND_COUNT_RANGE = (4, 96)
DEFAULT_BAND_COUNT = 32

SPECTRUM_SMOOTHING = 0.6
PEAK_HOLD_STEP = 0.01
MAX_DISPLAY_BINS = 256
WAVE_BANDS = 256

FRAME_LOG_EVERY = 30
HEARTBEAT_INTERVAL_MS = 500


@dataclass(frozen=True)
class VisualizerConfig:
    enabled: bool = True
    window_size: int = DEFAULT_WINDOW_SIZE
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    full_compute_interval_ms: int = DEFAULT_FULL_COMPUTE_MS
    use_fft: bool = True
    decay_enabled: bool = True
    decay_factor: float = DEFAULT_DECAY_FACTOR
    band_mode: BandMode = BandMode.LOG
    band_count: int = DEFAULT_BAND_COUNT
    ema_alpha: float = DEFAULT_EMA_ALPHA
    safe_start_ms: int = DEFAULT_SAFE_START_MS
    smoothing: float = SPECTRUM_SMOOTHING
    peak_hold_step: float = PEAK_HOLD_STEP

    def normalized(self) -> "VisualizerConfig":
        window = int(self.window_size)
        if window not in WINDOW_SIZES:
            # snap to the nearest supported size
            window = min(WINDOW_SIZES, key=lambda w: abs(w - window))
        return replace(
            self,
            enabled=bool(self.enabled),
            window_size=window,
            tick_interval_ms=int(clamp(int(self.tick_interval_ms), *TICK_INTERVAL_RANGE_MS)),
            full_compute_interval_ms=int(clamp(int(self.full_compute_interval_ms), *FULL_COMPUTE_RANGE_MS)),
            use_fft=bool(self.use_fft),
            decay_enabled=bool(self.decay_enabled),
            decay_factor=clamp(float(self.decay_factor), *DECAY_FACTOR_RANGE),
            band_mode=self.band_mode if isinstance(self.band_mode, BandMode) else BandMode.from_setting(str(self.band_mode)),
            band_count=int(clamp(int(self.band_count), *BAND_COUNT_RANGE)),
            ema_alpha=clamp(float(self.ema_alpha), *EMA_ALPHA_RANGE),
            safe_start_ms=max(0, int(self.safe_start_ms)),
            smoothing=clamp(float(self.smoothing), 0.0, 0.99),
            peak_hold_step=clamp(float(self.peak_hold_step), 0.0, 1.0),
        )

    def updated(self, **changes) -> "VisualizerConfig":
        return replace(self, **changes).normalized()


# QSettings persistence
# -----------------------------

def load_visualizer_config(settings) -> VisualizerConfig:
    d = VisualizerConfig()
    cfg = VisualizerConfig(
        enabled=settings.value("visualizer/enabled", d.enabled, type=bool),
        window_size=settings.value("visualizer/window_size", d.window_size, type=int),
        tick_interval_ms=settings.value("visualizer/tick_interval_ms", d.tick_interval_ms, type=int),
        full_compute_interval_ms=settings.value(
            "visualizer/full_compute_interval_ms", d.full_compute_interval_ms, type=int
        ),
        use_fft=settings.value("visualizer/use_fft", d.use_fft, type=bool),
        decay_enabled=settings.value("visualizer/decay_enabled", d.decay_enabled, type=bool),
        decay_factor=settings.value("visualizer/decay_factor", d.decay_factor, type=float),
        band_mode=BandMode.from_setting(str(settings.value("visualizer/band_mode", d.band_mode.value))),
        band_count=settings.value("visualizer/band_count", d.band_count, type=int),
        ema_alpha=settings.value("visualizer/ema_alpha", d.ema_alpha, type=float),
        safe_start_ms=settings.value("visualizer/safe_start_ms", d.safe_start_ms, type=int),
    )
    return cfg.normalized()


def save_visualizer_config(settings, cfg: VisualizerConfig) -> None:
    settings.setValue("visualizer/enabled", bool(cfg.enabled))
    settings.setValue("visualizer/window_size", int(cfg.window_size))
    settings.setValue("visualizer/tick_interval_ms", int(cfg.tick_interval_ms))
    settings.setValue("visualizer/full_compute_interval_ms", int(cfg.full_compute_interval_ms))
    settings.setValue("visualizer/use_fft", bool(cfg.use_fft))
    settings.setValue("visualizer/decay_enabled", bool(cfg.decay_enabled))
    settings.setValue("visualizer/decay_factor", float(cfg.decay_factor))
    settings.setValue("visualizer/band_mode", cfg.band_mode.value)
    settings.setValue("visualizer/band_count", int(cfg.band_count))
    settings.setValue("visualizer/ema_alpha", float(cfg.ema_alpha))
    settings.setValue("visualizer/safe_start_ms", int(cfg.safe_start_ms))
