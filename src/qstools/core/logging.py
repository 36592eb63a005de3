"""Log handlers for the qs-tools commands.

Commands print their own progress to stdout. Log records go to stderr and
only warnings show up there unless ``--debug`` is given. ``--log-file``
adds a plain-text file that always gets every record.
"""

import logging
import sys
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

# paramiko logs every channel event at INFO
NOISY_LOGGERS = ("paramiko", "paramiko.transport")

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def _file_handler(log_file: str, log_format: str) -> logging.Handler:
    log_path = Path(log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(log_format))
    return handler


def _log_uncaught(
    exc_type: Type[BaseException],
    exc_value: BaseException,
    exc_traceback: Optional[TracebackType],
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def setup_logging(
    debug: bool = False,
    log_file: Optional[str] = None,
    log_format: str = FILE_FORMAT,
) -> None:
    """Install the stderr handler and, if asked, the log file handler.

    Calling it again replaces the handlers from the previous call.

    Args:
        debug: Show DEBUG records on stderr, with source paths and the local
            variables of tracebacks. paramiko's loggers are let through too.
        log_file: File that receives every record at DEBUG level; ``~`` is
            expanded and missing parent directories are created.
        log_format: Record format for the log file.
    """
    level = logging.DEBUG if debug else logging.WARNING
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    stderr_handler = RichHandler(
        console=console,
        show_path=debug,
        enable_link_path=debug,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=debug,
    )
    stderr_handler.setLevel(level)
    root_logger.addHandler(stderr_handler)
    if log_file:
        root_logger.addHandler(_file_handler(log_file, log_format))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)

    sys.excepthook = _log_uncaught
    logger.debug("Logging set up (debug=%s, log file=%s)", debug, log_file)
