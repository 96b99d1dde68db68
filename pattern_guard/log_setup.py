"""
Logging setup for the CLI.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the command-line entry point.
"""

import logging
import os
from datetime import datetime


def setup_logger(log_dir: str = ".pattern_guard/logs", verbose: bool = False) -> logging.Logger:
    """Creates a file logger. All verbose output goes here."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"pattern_guard_{timestamp}.log")

    logger = logging.getLogger("pattern_guard")
    logger.setLevel(logging.DEBUG)

    # File handler: captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)

    # Console handler: warnings only unless verbose
    sh = logging.StreamHandler()
    sh.setLevel(logging.DEBUG if verbose else logging.WARNING)
    sh.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(sh)

    return logger
