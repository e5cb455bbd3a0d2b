from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from dsp import magnitude_spectrum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformOutcome:
    """Result of one offloaded transform: exactly one of spectrum/error is set."""
    samples: np.ndarray
    spectrum: Optional[np.ndarray] = None
    error: Optional[BaseException] = None
    tag: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.spectrum is not None


class SpectrumWorker:
    """
    Single-slot transform offload.

    submit() starts a transform only when the slot is free; poll() hands back
    the finished outcome (once) from the caller's thread. The worker never
    touches caller state.
    """

    def __init__(
        self,
        transform: Callable[[np.ndarray], np.ndarray] = magnitude_spectrum,
        executor: Optional[Executor] = None,
    ):
        self._transform = transform
        self._owns_executor = executor is None
        self._executor: Optional[Executor] = executor or ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="spectrum",
        )
        self._future: Optional[Future] = None
        self._samples: Optional[np.ndarray] = None
        self._tag: Any = None

    def submit(self, samples: np.ndarray, tag: Any = None) -> bool:
        if self._future is not None or self._executor is None:
            return False
        # the worker gets its own copy
        buf = np.array(samples, dtype=np.float32, copy=True)
        self._samples = buf
        self._tag = tag
        self._future = self._executor.submit(self._transform, buf)
        return True

    def poll(self) -> Optional[TransformOutcome]:
        future = self._future
        if future is None or not future.done():
            return None
        return self._take(future)

    def _take(self, future: Future) -> TransformOutcome:
        samples = self._samples if self._samples is not None else np.zeros(0, dtype=np.float32)
        tag = self._tag
        self._future = None
        self._samples = None
        self._tag = None
        error = future.exception()
        if error is not None:
            return TransformOutcome(samples=samples, error=error, tag=tag)
        return TransformOutcome(samples=samples, spectrum=future.result(), tag=tag)

    def shutdown(self) -> None:
        # an in-flight transform is left to finish; its result is dropped
        if self._future is not None:
            logger.debug("Spectrum worker shut down with a transform in flight")
        self._future = None
        self._samples = None
        self._tag = None
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
        self._executor = None
