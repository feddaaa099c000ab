"""
Logging Configuration

Library modules log to children of the `diffphysics` logger and print
nothing on their own. Applications (training scripts, notebooks) call
`setup_logging` once to route those records to the console and, optionally,
a file.

Optimizer loops draw tqdm progress bars, so console records are written
through `tqdm.write`, which keeps an active bar intact below the message.
"""

import logging
import sys
from typing import IO, Optional

from tqdm import tqdm


LOGGER_NAME = "diffphysics"

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


class ProgressBarHandler(logging.StreamHandler):
    """Console handler that prints above any running tqdm bar."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


def _remove_installed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, "_diffphysics", False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """
    Route `diffphysics` log records to the console and optionally a file.

    Calling it again replaces the handlers installed by the previous call
    (closing any open log file) and leaves handlers added by the
    application alone. Records do not propagate to the root logger, so an
    application that also configures the root does not see them twice.

    Args:
        level: Logging level, e.g. logging.DEBUG to see rollout step counts
        log_file: Optional path; the file is truncated on every call
        stream: Console stream, defaults to sys.stdout

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    _remove_installed_handlers(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [ProgressBarHandler(stream or sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._diffphysics = True
        logger.addHandler(handler)

    logger.debug("Logging to console%s", f" and {log_file}" if log_file else "")
    return logger
