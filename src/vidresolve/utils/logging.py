"""Logging utilities."""

import logging
import sys
import traceback
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ERROR_LOG = Path.home() / "vidresolve_error.log"


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[Path] = None):
    """Log to stdout, and to `log_file` as well when one is given."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def log_error(msg: str, exc: Optional[BaseException] = None, log_file: Optional[Path] = None):
    """Append errors to a file for debugging."""
    log_file = log_file or ERROR_LOG
    try:
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(f"{msg}\n")
            if exc is not None:
                f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
            f.write("-" * 50 + "\n")
    except OSError as e:
        logging.getLogger(__name__).debug(f"Could not write {log_file}: {e}")
