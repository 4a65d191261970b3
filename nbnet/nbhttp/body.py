"""A reader over an HTTP body held in a pooled buffer."""

from __future__ import annotations

from typing import Any, Optional

from nbnet import mempool


class BodyReader:
    """Reads a body collected in a buffer borrowed from the default pool."""

    def __init__(self, data: bytes = b"") -> None:
        self._buffer: Optional[bytearray] = None
        self._index = 0
        if data:
            self._buffer = mempool.malloc(len(data))
            self._buffer[:] = data

    def __enter__(self) -> "BodyReader":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` unread bytes (all if negative); b"" at the end."""
        if self._buffer is None:
            return b""
        available = len(self._buffer) - self._index
        if available <= 0:
            return b""
        if size < 0 or size > available:
            size = available
        data = bytes(self._buffer[self._index : self._index + size])
        self._index += size
        return data

    def append(self, data: bytes) -> None:
        """Add ``data`` to the end of the body."""
        if not data:
            return
        if self._buffer is None:
            self._buffer = mempool.malloc(len(data))
            self._buffer[:] = data
        else:
            self._buffer = mempool.append(self._buffer, data)

    def raw_body(self) -> Optional[bytearray]:
        """The buffer itself; it goes back to the pool when the reader is closed."""
        return self._buffer

    def take_over(self) -> Optional[bytearray]:
        """Hand the buffer to the caller, who then manages its release."""
        buf = self._buffer
        self._buffer = None
        self._index = 0
        return buf

    def close(self) -> None:
        """Return the buffer to the pool."""
        if self._buffer is not None:
            mempool.free(self._buffer)
            self._buffer = None
            self._index = 0

    def reset(self) -> None:
        """Forget the buffer without returning it to the pool."""
        if self._buffer is not None:
            self._buffer = None
            self._index = 0