# concierge/utils/logging.py

import logging
import os
from pathlib import Path

from concierge.config.settings import BASE_DIR

LOG_DIR = Path(os.getenv("CONCIERGE_LOG_DIR", "").strip() or BASE_DIR / "concierge" / "logs")
LOG_FILE = LOG_DIR / "concierge.log"


def get_logger(name: str = "concierge") -> logging.Logger:
    """
    Return a logger that logs both to file and console.
    Avoids adding duplicate handlers on repeated imports.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid duplicate handlers

    logger.setLevel(logging.INFO)

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    # File handler
    fh = logging.FileHandler(LOG_FILE, encoding="utf-8")
    fh.setLevel(logging.INFO)

    # Console handler (optional but handy while developing)
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger
