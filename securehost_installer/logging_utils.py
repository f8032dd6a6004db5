from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_LOG_PATH = "/var/log/securehost-installer.log"

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Path of the file handler installed by configure_logging(), once it has run.
_active_log_path: Optional[str] = None


def _file_handler(log_path: str) -> Tuple[logging.Handler, str]:
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        fallback = str(Path.cwd() / os.path.basename(DEFAULT_LOG_PATH))
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Send installer logging to log_path and (optionally) the console.

    The file always records at DEBUG, so captured tool output ends up there
    even when the console only shows INFO. /var/log is root-only; when it is
    not writable the file lands in the working directory instead, and the run
    journal records both the requested and the actual path.

    Returns the actual file path being used.
    """

    global _active_log_path

    root = logging.getLogger()
    if _active_log_path is not None:
        for h in root.handlers:
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                h.setLevel(level)
        return _active_log_path

    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)
    root.setLevel(logging.DEBUG)

    handler, chosen_path = _file_handler(log_path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(fmt)
    root.addHandler(handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(fmt)
        root.addHandler(console)

    _active_log_path = chosen_path
    logging.getLogger(__name__).info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path
