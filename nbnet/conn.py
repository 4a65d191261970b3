"""Non-blocking connections that can be driven by an engine's pollers."""

from __future__ import annotations

import math
import socket
import struct
import sys
import threading
import time
import traceback
from collections import deque
from enum import IntEnum
from typing import Any, Callable, Deque, Dict, Optional, Protocol, Tuple

from nbnet import log
from nbnet.errors import (
    ConnClosedError,
    NBIOError,
    ReadTimeoutError,
    WriteOverflowError,
    WriteTimeoutError,
)

_AF_UNIX = getattr(socket, "AF_UNIX", None)
_WOULD_BLOCK = (BlockingIOError, InterruptedError)


class ConnType(IntEnum):
    """Kinds of connection."""

    TCP = 1
    UDP_SERVER = 2
    UDP_CLIENT_FROM_READ = 3
    UDP_CLIENT_FROM_DIAL = 4
    UNIX = 5


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class ConnOwner(Protocol):
    """What a connection expects from the engine it is added to.

    UDP child connections share their parent's socket, so ``delete_conn``
    must identify connections by object, not by file descriptor.
    """

    max_write_buffer_size: int
    udp_read_timeout: float

    def execute(self, func: Callable[[], None]) -> None: ...

    def after_func(self, delay: float, func: Callable[[], None]) -> Cancellable: ...

    def notify_before_write(self, conn: "Conn") -> None: ...

    def notify_after_read(self, conn: "Conn") -> None: ...

    def notify_open(self, conn: "Conn") -> None: ...

    def mod_write(self, conn: "Conn") -> None: ...

    def reset_read(self, conn: "Conn") -> None: ...

    def delete_conn(self, conn: "Conn") -> None: ...


class Conn:
    """A non-blocking socket with buffered writes, deadlines and a task queue.

    Deadlines are absolute times in ``time.time()`` seconds; ``None`` clears
    them. Without an owning engine, tasks run inline and deadlines use
    ``threading.Timer``.
    """

    def __init__(
        self,
        sock: socket.socket,
        conn_type: ConnType,
        *,
        engine: Optional[ConnOwner] = None,
        local_addr: Any = None,
        remote_addr: Any = None,
        udp_parent: Optional["Conn"] = None,
        peer: Any = None,
    ) -> None:
        self._sock = sock
        self.conn_type = ConnType(conn_type)
        self.engine = engine
        self.local_addr = local_addr
        self.remote_addr = remote_addr
        self.session: Any = None
        self.data_handler: Optional[Callable[["Conn", bytes], None]] = None
        self.read_buffer: Optional[bytearray] = None
        self._fd = sock.fileno()
        self._lock = threading.RLock()
        self._closed = False
        self._close_err: Optional[BaseException] = None
        self._is_w_added = False
        self._write_buffer = bytearray()
        self._exec_list: Deque[Callable[[], None]] = deque()
        self._r_timer: Optional[Cancellable] = None
        self._w_timer: Optional[Cancellable] = None
        self._udp_parent = udp_parent
        self._peer = peer
        self._children_lock = threading.Lock()
        self._udp_children: Optional[Dict[Any, Conn]] = (
            {} if self.conn_type is ConnType.UDP_SERVER else None
        )

    def __repr__(self) -> str:
        return (
            f"Conn({self.conn_type.name}, local={self.local_addr!r}, "
            f"remote={self.remote_addr!r}, closed={self._closed})"
        )

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def hash_code(self) -> int:
        """The file descriptor the connection was created with."""
        return self._fd

    def fileno(self) -> int:
        return self._sock.fileno()

    def is_tcp(self) -> bool:
        return self.conn_type is ConnType.TCP

    def is_udp(self) -> bool:
        return self.conn_type in (
            ConnType.UDP_SERVER,
            ConnType.UDP_CLIENT_FROM_DIAL,
            ConnType.UDP_CLIENT_FROM_READ,
        )

    def is_unix(self) -> bool:
        return self.conn_type is ConnType.UNIX

    def on_data(self, handler: Callable[["Conn", bytes], None]) -> None:
        """Register the callback for incoming data."""
        self.data_handler = handler

    def is_closed(self) -> Tuple[bool, Optional[BaseException]]:
        """Return whether the connection is closed and the error it closed with."""
        return self._closed, self._close_err

    # task queue

    def _dispatch(self, func: Callable[[], None]) -> None:
        if self.engine is not None:
            self.engine.execute(func)
        else:
            func()

    def _run_queue(self, safe: bool) -> None:
        while True:
            with self._lock:
                func = self._exec_list[0]
            if safe:
                try:
                    func()
                except Exception as exc:
                    log.error("conn execute failed: %s\n%s\n", exc, traceback.format_exc())
            else:
                func()
            with self._lock:
                self._exec_list.popleft()
                if not self._exec_list:
                    return

    def execute_len(self) -> int:
        with self._lock:
            return len(self._exec_list)

    def execute(self, func: Callable[[], None]) -> bool:
        """Queue ``func`` to run in order with this connection's other tasks.

        Returns False if the connection is closed. Exceptions are logged.
        """
        with self._lock:
            if self._closed:
                return False
            is_head = not self._exec_list
            self._exec_list.append(func)
        if is_head:
            self._dispatch(lambda: self._run_queue(True))
        return True

    def must_execute(self, func: Callable[[], None]) -> None:
        """Queue ``func`` even if the connection is closed; exceptions propagate."""
        with self._lock:
            is_head = not self._exec_list
            self._exec_list.append(func)
        if is_head:
            self._dispatch(lambda: self._run_queue(False))

    # reading

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; raises BlockingIOError if nothing is ready."""
        with self._lock:
            if self._closed:
                raise ConnClosedError()
            _, data = self._do_read(size)
        if self.engine is not None:
            self.engine.notify_after_read(self)
        return data

    def read_udp(self, size: int) -> Tuple["Conn", bytes]:
        """Read a datagram and return the connection it belongs to with its data."""
        with self._lock:
            if self._closed:
                raise ConnClosedError()
            conn, data = self._do_read(size)
        if self.engine is not None:
            self.engine.notify_after_read(self)
        return conn, data

    def _do_read(self, size: int) -> Tuple["Conn", bytes]:
        if self.conn_type in (ConnType.TCP, ConnType.UNIX):
            return self, self._sock.recv(size)
        if self.conn_type in (ConnType.UDP_SERVER, ConnType.UDP_CLIENT_FROM_DIAL):
            return self._read_udp(size)
        raise NBIOError("invalid udp conn for reading")

    def _read_udp(self, size: int) -> Tuple["Conn", bytes]:
        try:
            data, addr = self._sock.recvfrom(size)
        except _WOULD_BLOCK:
            raise
        except OSError as exc:
            if self._close_err is None:
                self._close_err = exc
            raise
        if self.conn_type is not ConnType.UDP_SERVER:
            return self, data
        child, existed = self._udp_child(addr)
        engine = self.engine
        if engine is not None and engine.udp_read_timeout > 0:
            child.set_read_deadline(time.time() + engine.udp_read_timeout)
        if not existed and engine is not None:
            engine.notify_open(child)
        return child, data

    def _udp_child(self, addr: Any) -> Tuple["Conn", bool]:
        with self._children_lock:
            children = self._udp_children if self._udp_children is not None else {}
            child = children.get(addr)
            if child is not None:
                return child, True
            child = Conn(
                self._sock,
                ConnType.UDP_CLIENT_FROM_READ,
                engine=self.engine,
                local_addr=self.local_addr,
                remote_addr=addr,
                udp_parent=self,
                peer=addr,
            )
            children[addr] = child
            self._udp_children = children
            return child, False

    # writing

    def wbuf_len(self) -> int:
        """Number of bytes waiting to be written."""
        return len(self._write_buffer)

    def _overflow(self, n: int) -> bool:
        limit = getattr(self.engine, "max_write_buffer_size", 0) if self.engine else 0
        return limit > 0 and len(self._write_buffer) + n > limit

    def _do_write(self, data: bytes) -> int:
        if self.conn_type in (ConnType.TCP, ConnType.UNIX, ConnType.UDP_CLIENT_FROM_DIAL):
            return self._sock.send(data)
        if self.conn_type is ConnType.UDP_CLIENT_FROM_READ:
            self._sock.sendto(data, self._peer)
            return len(data)
        return 0

    def _write(self, data: bytes) -> int:
        if not data:
            return 0
        if self._overflow(len(data)):
            raise WriteOverflowError()
        if self._write_buffer:
            self._write_buffer += data
            return len(data)
        try:
            n = self._do_write(data)
        except _WOULD_BLOCK:
            n = 0
        if len(data) - n > 0 and self.conn_type is ConnType.TCP:
            self._write_buffer = bytearray(memoryview(data)[n:])
            self._mod_write()
        return len(data)

    def _writev(self, buffers: list) -> int:
        size = sum(len(b) for b in buffers)
        if self._overflow(size):
            raise WriteOverflowError()
        if self._write_buffer:
            for b in buffers:
                self._write_buffer += b
            return size
        if len(buffers) > 1 and size <= 65536:
            return self._write(b"".join(buffers))
        return sum(max(self._write(b), 0) for b in buffers)

    def _after_write(self) -> None:
        if not self._write_buffer:
            self._cancel_timer("_w_timer")
        else:
            self._mod_write()

    def _guarded_write(self, action: Callable[[], int]) -> int:
        if self.engine is not None:
            self.engine.notify_before_write(self)
        with self._lock:
            if self._closed:
                raise ConnClosedError()
            try:
                n = action()
            except (OSError, WriteOverflowError) as exc:
                err: BaseException = exc
                self._closed = True
                self._stop_timers()
            else:
                self._after_write()
                return n
        self._close_without_lock(err)
        raise err

    def write(self, data: bytes) -> int:
        """Write ``data``, buffering what the socket cannot take yet.

        A write error closes the connection and is raised.
        """
        return self._guarded_write(lambda: self._write(data))

    def writev(self, buffers: list) -> int:
        """Write several buffers in order."""
        buffers = list(buffers)
        if len(buffers) == 1:
            return self._guarded_write(lambda: self._write(buffers[0]))
        return self._guarded_write(lambda: self._writev(buffers))

    def flush(self) -> None:
        """Try to send buffered data; called when the socket becomes writable."""
        with self._lock:
            if self._closed:
                raise ConnClosedError()
            if not self._write_buffer:
                return
            try:
                n = self._do_write(self._write_buffer)
            except _WOULD_BLOCK:
                n = 0
            except OSError as exc:
                err: BaseException = exc
                self._closed = True
                self._stop_timers()
            else:
                if n < len(self._write_buffer):
                    del self._write_buffer[:n]
                else:
                    self._write_buffer = bytearray()
                    self._cancel_timer("_w_timer")
                    self._reset_read()
                return
        self._close_without_lock(err)
        raise err

    def _mod_write(self) -> None:
        if not self._closed and not self._is_w_added:
            self._is_w_added = True
            if self.engine is not None:
                self.engine.mod_write(self)

    def _reset_read(self) -> None:
        if not self._closed and self._is_w_added:
            self._is_w_added = False
            if self.engine is not None:
                self.engine.reset_read(self)

    # closing

    def close(self) -> None:
        self.close_with_error(None)

    def close_with_error(self, err: Optional[BaseException]) -> None:
        """Close the connection once, recording ``err`` as the reason."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stop_timers()
        self._close_without_lock(err)

    def _close_without_lock(self, err: Optional[BaseException]) -> None:
        self._close_err = err
        self._write_buffer = bytearray()
        if self.engine is not None:
            self.engine.delete_conn(self)
        if self.conn_type in (ConnType.TCP, ConnType.UNIX):
            self._sock.close()
        else:
            self._close_udp()

    def _close_udp(self) -> None:
        parent = self._udp_parent
        if parent is not None:
            with parent._children_lock:
                if parent._udp_children is not None:
                    parent._udp_children.pop(self._peer, None)
            return
        self._sock.close()
        with self._children_lock:
            children = list((self._udp_children or {}).values())
            self._udp_children = None
        for child in children:
            child.close()

    # deadlines

    def _schedule(self, when: float, func: Callable[[], None]) -> Cancellable:
        delay = max(0.0, when - time.time())
        if self.engine is not None:
            return self.engine.after_func(delay, func)
        timer = threading.Timer(delay, func)
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timer(self, name: str) -> None:
        timer = getattr(self, name)
        if timer is not None:
            timer.cancel()
            setattr(self, name, None)

    def _stop_timers(self) -> None:
        self._cancel_timer("_w_timer")
        self._cancel_timer("_r_timer")

    def _set_deadline(
        self, name: str, make_err: Callable[[], BaseException], when: Optional[float]
    ) -> None:
        with self._lock:
            if self._closed:
                return
            self._cancel_timer(name)
            if when is not None:
                setattr(
                    self,
                    name,
                    self._schedule(when, lambda: self.close_with_error(make_err())),
                )

    def set_deadline(self, when: Optional[float]) -> None:
        """Close the connection with a timeout error at ``when``; None clears."""
        self._set_deadline("_r_timer", ReadTimeoutError, when)
        self._set_deadline("_w_timer", WriteTimeoutError, when)

    def set_read_deadline(self, when: Optional[float]) -> None:
        self._set_deadline("_r_timer", ReadTimeoutError, when)

    def set_write_deadline(self, when: Optional[float]) -> None:
        self._set_deadline("_w_timer", WriteTimeoutError, when)

    # socket options

    def set_no_delay(self, nodelay: bool) -> None:
        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1 if nodelay else 0)

    def set_read_buffer(self, size: int) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)

    def set_write_buffer(self, size: int) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, size)

    def set_keep_alive(self, keepalive: bool) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1 if keepalive else 0)

    def set_keep_alive_period(self, seconds: float) -> None:
        """Set keep-alive idle and interval, rounded up to whole seconds (Linux only)."""
        if not sys.platform.startswith("linux"):
            raise NBIOError("not supported")
        secs = math.ceil(seconds)
        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, secs)
        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, secs)

    def set_linger(self, onoff: int, linger: int) -> None:
        self._sock.setsockopt(
            socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", onoff, linger)
        )


def _peer_name(sock: socket.socket) -> Any:
    try:
        return sock.getpeername()
    except OSError:
        return None


def nb_conn(sock: Any) -> Conn:
    """Wrap a connected or bound socket in a non-blocking Conn; Conns pass through."""
    if sock is None:
        raise NBIOError("invalid conn: nil")
    if isinstance(sock, Conn):
        return sock
    local = sock.getsockname()
    remote = _peer_name(sock)
    if sock.type == socket.SOCK_STREAM:
        conn_type = ConnType.UNIX if _AF_UNIX is not None and sock.family == _AF_UNIX else ConnType.TCP
    elif sock.type == socket.SOCK_DGRAM:
        conn_type = ConnType.UDP_SERVER if remote is None else ConnType.UDP_CLIENT_FROM_DIAL
    else:
        raise NBIOError(f"invalid conn type: {sock.type!r}")
    sock.setblocking(False)
    return Conn(sock, conn_type, local_addr=local, remote_addr=remote)


_NETWORKS = {
    "tcp": (socket.AF_UNSPEC, socket.SOCK_STREAM),
    "tcp4": (socket.AF_INET, socket.SOCK_STREAM),
    "tcp6": (socket.AF_INET6, socket.SOCK_STREAM),
    "udp": (socket.AF_UNSPEC, socket.SOCK_DGRAM),
    "udp4": (socket.AF_INET, socket.SOCK_DGRAM),
    "udp6": (socket.AF_INET6, socket.SOCK_DGRAM),
}


def _split_host_port(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise NBIOError(f"missing port in address {address}")
    try:
        port_num = int(port)
    except ValueError:
        raise NBIOError(f"invalid port in address {address}") from None
    return host.strip("[]") or "localhost", port_num


def _connect(network: str, address: str, timeout: Optional[float]) -> socket.socket:
    if network == "unix":
        if _AF_UNIX is None:
            raise NBIOError("unknown network unix")
        sock = socket.socket(_AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(address)
        except OSError:
            sock.close()
            raise
        return sock
    if network not in _NETWORKS:
        raise NBIOError(f"unknown network {network}")
    family, socktype = _NETWORKS[network]
    host, port = _split_host_port(address)
    last_err: Optional[OSError] = None
    for fam, typ, proto, _, sockaddr in socket.getaddrinfo(host, port, family, socktype):
        sock = socket.socket(fam, typ, proto)
        try:
            sock.settimeout(timeout)
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_err = exc
    raise last_err if last_err is not None else NBIOError(f"no address for {address}")


def dial(network: str, address: str) -> Conn:
    """Connect to ``address`` ("host:port" or a unix path) and wrap the socket."""
    return nb_conn(_connect(network, address, None))


def dial_timeout(network: str, address: str, timeout: float) -> Conn:
    """Like dial, giving up on connecting after ``timeout`` seconds."""
    return nb_conn(_connect(network, address, timeout))