"""Reusable byte buffers."""

from __future__ import annotations

from collections import deque
from typing import Protocol, Union

_MAX_POOLED = 4096


class Allocator(Protocol):
    def malloc(self, size: int) -> bytearray: ...

    def realloc(self, buf: bytearray, size: int) -> bytearray: ...

    def append(self, buf: bytearray, more: bytes) -> bytearray: ...

    def append_string(self, buf: bytearray, more: str) -> bytearray: ...

    def free(self, buf: bytearray) -> None: ...


def _resize(buf: bytearray, size: int) -> bytearray:
    if len(buf) < size:
        buf.extend(bytes(size - len(buf)))
    else:
        del buf[size:]
    return buf


class MemPool:
    """A pool of bytearrays; buffers larger than ``free_size`` are not kept.

    Contents of a buffer handed out by ``malloc`` are unspecified.
    """

    def __init__(self, buf_size: int = 0, free_size: int = 0) -> None:
        if buf_size <= 0:
            buf_size = 64
        if free_size <= 0:
            free_size = 64 * 1024
        if free_size < buf_size:
            free_size = buf_size
        self.buf_size = buf_size
        self.free_size = free_size
        self._pool: deque[bytearray] = deque()

    def _get(self) -> bytearray:
        try:
            return self._pool.pop()
        except IndexError:
            return bytearray(self.buf_size)

    def malloc(self, size: int) -> bytearray:
        if size > self.free_size:
            return bytearray(size)
        return _resize(self._get(), size)

    def realloc(self, buf: bytearray, size: int) -> bytearray:
        if size <= len(buf):
            del buf[size:]
            return buf
        if len(buf) < self.free_size:
            new = _resize(self._get(), size)
            new[: len(buf)] = buf
            self.free(buf)
            return new
        buf.extend(bytes(size - len(buf)))
        return buf

    def append(self, buf: bytearray, more: bytes) -> bytearray:
        buf += more
        return buf

    def append_string(self, buf: bytearray, more: str) -> bytearray:
        buf += more.encode()
        return buf

    def free(self, buf: bytearray) -> None:
        if len(buf) > self.free_size or len(self._pool) >= _MAX_POOLED:
            return
        self._pool.append(buf)


class NativeAllocator:
    """Allocates fresh buffers every time and never pools."""

    def malloc(self, size: int) -> bytearray:
        return bytearray(size)

    def realloc(self, buf: bytearray, size: int) -> bytearray:
        if size <= len(buf):
            del buf[size:]
            return buf
        new = bytearray(size)
        new[: len(buf)] = buf
        return new

    def append(self, buf: bytearray, more: bytes) -> bytearray:
        buf += more
        return buf

    def append_string(self, buf: bytearray, more: str) -> bytearray:
        buf += more.encode()
        return buf

    def free(self, buf: bytearray) -> None:
        """Drop the buffer's contents so its memory can be reclaimed."""
        buf.clear()


DEFAULT_MEM_POOL: MemPool = MemPool(1024, 1024 * 1024 * 1024)


def malloc(size: int) -> bytearray:
    return DEFAULT_MEM_POOL.malloc(size)


def realloc(buf: bytearray, size: int) -> bytearray:
    return DEFAULT_MEM_POOL.realloc(buf, size)


def append(buf: bytearray, more: Union[bytes, bytearray]) -> bytearray:
    return DEFAULT_MEM_POOL.append(buf, more)


def append_string(buf: bytearray, more: str) -> bytearray:
    return DEFAULT_MEM_POOL.append_string(buf, more)


def free(buf: bytearray) -> None:
    DEFAULT_MEM_POOL.free(buf)


def init(buf_size: int, free_size: int) -> None:
    """Replace the default pool."""
    global DEFAULT_MEM_POOL
    DEFAULT_MEM_POOL = MemPool(buf_size, free_size)