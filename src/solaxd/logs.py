import logging
import sys
from pathlib import Path
from typing import Optional

LEVELS = ("error", "warning", "info", "debug")


def setup_logging(level: str = "info", log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure the root logger for the daemon.

    Output goes to stderr, or is appended to ``log_file`` when one is given.
    Errors are always echoed to stderr so a failing start is visible.
    """
    log_level = getattr(logging, level.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level '{level}', expected one of {', '.join(LEVELS)}")

    formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []
    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
        error_handler = logging.StreamHandler(sys.stderr)
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        handlers.append(error_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    return logging.getLogger("solaxd")
