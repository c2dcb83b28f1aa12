"""
screenlens logging: everything under the "screenlens" logger goes to a
rotating screenlens.log in the configured log_dir at DEBUG, and to the
console at the [logging] level.
"""

import logging
import logging.handlers
from pathlib import Path


def setup_logging(log_dir: Path, level: str = "INFO") -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "screenlens.log"

    root = logging.getLogger("screenlens")
    root.setLevel(logging.DEBUG)

    # Re-running setup (tests, repeated CLI calls in one process) must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    fmt_detail = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fmt_simple = logging.Formatter("%(levelname)-8s | %(message)s")

    # Rotating file
    fh = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt_detail)

    # Console
    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(fmt_simple)

    root.addHandler(fh)
    root.addHandler(ch)
    root.info("Logging initialized")
    return root
