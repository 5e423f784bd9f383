"""dotfactory CLI logging infrastructure.

Sets up logging with a Rich console handler on *stderr* and an optional
plain file handler (``run.log`` in the logs directory) with timestamps.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "opentelemetry")

RUN_LOG_FILENAME = "run.log"

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def console_level(verbose: bool = False, quiet: bool = False) -> int:
    """Console threshold: DEBUG with *verbose*, ERROR with *quiet*, else WARNING."""
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.ERROR
    return logging.WARNING


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_file: Optional[Path] = None,
    *,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``dotfactory`` logger.

    Parameters
    ----------
    verbose:
        Show DEBUG records on the console.
    quiet:
        Show only ERROR records on the console.
    log_file:
        Optional path to a log file.  A :class:`~logging.FileHandler` with
        timestamps is added when provided; it always records INFO and above
        (DEBUG with *verbose*).
    console:
        Optional Rich console for the console handler.

    Returns
    -------
    logging.Logger
        The configured ``dotfactory`` logger.
    """
    logger = logging.getLogger("dotfactory")
    logger.setLevel(logging.DEBUG)

    # Remove existing handlers to prevent duplication on repeated calls
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    rich_console = console or Console(stderr=True)
    rich_handler = RichHandler(
        console=rich_console,
        show_time=True,
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(console_level(verbose, quiet))
    logger.addHandler(rich_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_fmt = logging.Formatter(
            "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
