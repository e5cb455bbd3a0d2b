"""
Music Visio: plays an audio file and draws its frequency spectrum in sync
with the playback position.

Decoding needs ffmpeg on PATH; playback needs sounddevice (PortAudio).

Environment:
  MUSICVISIO_DEBUG=1       verbose logging (same as --debug)
  MUSICVISIO_HEARTBEAT=1   log position and visualizer state every 500 ms
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from PySide6 import QtWidgets

from utils import env_flag

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Play an audio file with a live spectrum visualizer."
    )
    parser.add_argument("path", nargs="?", help="Audio file to open on start (optional)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args, qt_args = parser.parse_known_args()

    debug = args.debug or env_flag("MUSICVISIO_DEBUG")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.path and not os.path.exists(args.path):
        sys.exit(f"[!] Input file not found: {args.path}")

    # imported late so logging is configured before module-level setup runs
    from ui.main_window import MainWindow

    app = QtWidgets.QApplication([sys.argv[0], *qt_args])
    app.setApplicationName("Music Visio")
    w = MainWindow(initial_path=args.path)
    w.show()
    logger.debug("Main window shown")
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
