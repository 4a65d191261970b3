"""Errors raised by connections and the engine."""

from __future__ import annotations


class NBIOError(Exception):
    """Base class for errors raised by this package."""

    default_message = "nbio error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message if message is not None else self.default_message)


class ReadTimeoutError(NBIOError, TimeoutError):
    """A connection's read deadline passed."""

    default_message = "read timeout"


class WriteTimeoutError(NBIOError, TimeoutError):
    """A connection's write deadline passed."""

    default_message = "write timeout"


class WriteOverflowError(NBIOError):
    """Data waiting to be written exceeded the configured limit."""

    default_message = "write overflow"


class ConnClosedError(NBIOError, ConnectionError):
    """The connection or listener is already closed."""

    default_message = "use of closed network connection"