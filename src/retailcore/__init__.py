"""RetailCore: inventory costing and customer credit ledger for a small shop.

Importing the package configures the shared ``retailcore`` logger used by
every module. Records go to a rotating file under ``.logs/`` (or the
directory named by ``RETAILCORE_LOG_DIR``) and warnings are echoed to stderr.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RETAILCORE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "retailcore.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _configure_logging() -> logging.Logger:
    """Attach the file and console handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG if os.environ.get("RETAILCORE_DEBUG") else logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # CLI results go to stdout; only problems reach the console log.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'retailcore' package (version %s).", __version__)

__all__ = ["log", "LOG_FILE", "__version__"]
