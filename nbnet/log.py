"""Levelled logging used throughout the package."""

from __future__ import annotations

import sys
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional, Protocol, TextIO

TIME_FORMAT = "%Y/%m/%d %H:%M:%S"

_LOGGER_METHODS = ("debug", "info", "warn", "error")


class Level(IntEnum):
    """Logging priorities, from most to least verbose."""

    ALL = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4
    NONE = 5


class LoggerLike(Protocol):
    def debug(self, fmt: str, *args: Any) -> None: ...

    def info(self, fmt: str, *args: Any) -> None: ...

    def warn(self, fmt: str, *args: Any) -> None: ...

    def error(self, fmt: str, *args: Any) -> None: ...


def _timestamp() -> str:
    now = datetime.now()
    return f"{now.strftime(TIME_FORMAT)}.{now.microsecond // 1000:03d}"


class Logger:
    """Writes timestamped, level-tagged lines to a text stream.

    Messages use printf-style formatting: ``fmt % args`` when args are given.
    When ``output`` is None, lines go to the current ``sys.stdout``.
    """

    def __init__(self, level: int = Level.INFO, output: Optional[TextIO] = None) -> None:
        self.level = Level(level)
        self.output = output

    @property
    def _stream(self) -> TextIO:
        return self.output if self.output is not None else sys.stdout

    def set_level(self, level: int) -> None:
        """Change the priority; an unknown level is reported and ignored."""
        try:
            self.level = Level(level)
        except ValueError:
            self._stream.write(f"invalid log level: {level}")

    def _log(self, level: Level, tag: str, fmt: str, args: tuple) -> None:
        if level >= self.level:
            message = fmt % args if args else fmt
            self._stream.write(f"{_timestamp()} [{tag}] {message}\n")

    def debug(self, fmt: str, *args: Any) -> None:
        self._log(Level.DEBUG, "DBG", fmt, args)

    def info(self, fmt: str, *args: Any) -> None:
        self._log(Level.INFO, "INF", fmt, args)

    def warn(self, fmt: str, *args: Any) -> None:
        self._log(Level.WARN, "WRN", fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        self._log(Level.ERROR, "ERR", fmt, args)


default_logger: Optional[LoggerLike] = Logger(Level.INFO)


def set_logger(logger: Optional[LoggerLike]) -> Optional[LoggerLike]:
    """Replace the default logger and return the one it replaced.

    None silences the module functions; an object lacking any of the
    logging methods raises TypeError.
    """
    global default_logger
    if logger is not None:
        missing = [m for m in _LOGGER_METHODS if not callable(getattr(logger, m, None))]
        if missing:
            raise TypeError(f"logger lacks methods: {', '.join(missing)}")
    previous = default_logger
    default_logger = logger
    return previous


def set_level(level: int) -> None:
    """Set the default logger's priority if it supports levels."""
    setter = getattr(default_logger, "set_level", None)
    if callable(setter):
        setter(level)


def debug(fmt: str, *args: Any) -> None:
    if default_logger is not None:
        default_logger.debug(fmt, *args)


def info(fmt: str, *args: Any) -> None:
    if default_logger is not None:
        default_logger.info(fmt, *args)


def warn(fmt: str, *args: Any) -> None:
    if default_logger is not None:
        default_logger.warn(fmt, *args)


def error(fmt: str, *args: Any) -> None:
    if default_logger is not None:
        default_logger.error(fmt, *args)