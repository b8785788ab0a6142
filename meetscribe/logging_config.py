"""Logging setup for the command line runner.

- Console: fragments go to stdout through the sink, so log records go to
  stderr and only WARNING+ unless verbose.
- File (optional): full DEBUG log at <log_dir>/YYYY-MM-DD_HH-MM-SS.log.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> Optional[Path]:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if log_dir is None:
        return None
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root.addHandler(file_handler)
    logging.getLogger("meetscribe").info("Logging to %s", log_path)
    return log_path
