"""Turn connections into fixed-size keys and back."""

from __future__ import annotations

import socket
import ssl
import threading
import weakref
from enum import IntEnum
from typing import Any

from nbnet.conn import Conn
from nbnet.errors import NBIOError

_ID_SIZE = 8
KEY_SIZE = _ID_SIZE + 1

_AF_UNIX = getattr(socket, "AF_UNIX", None)


class ConnKind(IntEnum):
    """The kind of connection a key refers to."""

    NONE = 0
    NBIO = 1
    TCP = 2
    UNIX = 3
    TLS = 4


_registry: "weakref.WeakValueDictionary[bytes, Any]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def _kind_of(conn: Any) -> ConnKind:
    if isinstance(conn, Conn):
        return ConnKind.NBIO
    if isinstance(conn, ssl.SSLSocket):
        return ConnKind.TLS
    if isinstance(conn, socket.socket) and conn.type == socket.SOCK_STREAM:
        if _AF_UNIX is not None and conn.family == _AF_UNIX:
            return ConnKind.UNIX
        if conn.family in (socket.AF_INET, socket.AF_INET6):
            return ConnKind.TCP
    raise NBIOError(f"invalid conn type: {conn!r}")


def conn_to_key(conn: Any) -> bytes:
    """Return a key naming ``conn`` while it is alive."""
    kind = _kind_of(conn)
    key = id(conn).to_bytes(_ID_SIZE, "little") + bytes([kind])
    with _registry_lock:
        _registry[key] = conn
    return key


def key_to_conn(key: bytes) -> Any:
    """Return the connection a key from ``conn_to_key`` names."""
    if len(key) != KEY_SIZE:
        raise NBIOError(f"invalid conn key size: {len(key)}")
    kind = key[_ID_SIZE]
    if kind == ConnKind.NONE or kind not in ConnKind._value2member_map_:
        raise NBIOError(f"invalid conn type: {kind}")
    with _registry_lock:
        conn = _registry.get(bytes(key))
    if conn is None:
        raise NBIOError("conn not found")
    return conn