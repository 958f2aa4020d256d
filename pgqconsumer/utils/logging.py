import logging
import sys
from logging.handlers import WatchedFileHandler
from typing import Optional


ROOT_LOGGER = "pgqconsumer"

LEVELS = [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL]

# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ExtraFormatter(logging.Formatter):
    """Append the extra= fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [f"{k}={v}" for k, v in record.__dict__.items() if k not in _RECORD_ATTRS]
        if extras:
            line = f"{line} {' '.join(extras)}"
        return line


def _formatter() -> logging.Formatter:
    return ExtraFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def configure_logging(name: str) -> logging.Logger:
    """Child of the package logger; output is one key=value line per record."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(_formatter())
        root.setLevel(logging.INFO)
        root.addHandler(handler)
        root.propagate = False
    return root.getChild(name)


def setup_output(level: str, logfile: Optional[str] = None) -> None:
    """Point the package logger at logfile (or stdout) with the given level.

    Raises OSError when the log file cannot be opened.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if logfile:
        handler: logging.Handler = WatchedFileHandler(logfile)
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter())

    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(logging.getLevelName(level.upper()))
    root.propagate = False


def _step(delta: int) -> int:
    root = logging.getLogger(ROOT_LOGGER)
    current = root.getEffectiveLevel()
    index = min(range(len(LEVELS)), key=lambda i: abs(LEVELS[i] - current))
    index = max(0, min(len(LEVELS) - 1, index + delta))
    root.setLevel(LEVELS[index])
    return LEVELS[index]


def log_more() -> int:
    return _step(-1)


def log_less() -> int:
    return _step(1)
