"""Logging setup for the CLI and web entry points.

Handlers are attached to the ``updater`` logger only, so importing the package
never changes the root logger. ``APPUPDATER_LOG_FILE`` adds a plain-text file
handler next to the rich console handler.
"""

import logging
import os
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FILE_ENV = "APPUPDATER_LOG_FILE"
_LOGGER_NAME = "updater"
_HANDLER_TAG = "_appupdater_handler"


class LogVerbosity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"


_LEVELS = {
    LogVerbosity.ERROR: logging.ERROR,
    LogVerbosity.WARNING: logging.WARNING,
    LogVerbosity.INFO: logging.INFO,
    LogVerbosity.DEBUG: logging.DEBUG,
}


def _tag(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_TAG, True)
    return handler


def setup_logging(
    verbosity: LogVerbosity | str = LogVerbosity.WARNING,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``updater`` logger.

    Safe to call repeatedly: previously installed handlers are replaced, never
    duplicated.
    """
    level = _LEVELS[LogVerbosity(verbosity)]
    logger = logging.getLogger(_LOGGER_NAME)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logger.removeHandler(handler)
            handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(level)
    logger.addHandler(_tag(rich_handler))

    log_file = os.environ.get(LOG_FILE_ENV)
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(_tag(file_handler))

    logger.setLevel(logging.DEBUG if log_file else level)
    logger.propagate = False
    return logger
