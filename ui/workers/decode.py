from __future__ import annotations

import logging

from PySide6 import QtCore

from audio.pcm_source import PcmDecodeError, PcmSource

logger = logging.getLogger(__name__)


class DecodeWorker(QtCore.QObject):
    """Runs PcmSource.prepare() off the GUI thread."""

    finished = QtCore.Signal(object)  # PcmInfo
    failed = QtCore.Signal(str)

    def __init__(self, source: PcmSource, parent=None):
        super().__init__(parent)
        self._source = source

    @property
    def source(self) -> PcmSource:
        return self._source

    @QtCore.Slot()
    def run(self) -> None:
        try:
            info = self._source.prepare()
        except (PcmDecodeError, OSError) as e:
            logger.error("Decode failed: %s", e)
            self.failed.emit(str(e))
            return
        self.finished.emit(info)
