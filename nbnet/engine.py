"""An engine that drives non-blocking connections with poller threads."""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import os
import selectors
import socket
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional, Set, Tuple

from nbnet import log
from nbnet.conn import Conn, ConnType, nb_conn
from nbnet.errors import ConnClosedError, NBIOError

DEFAULT_READ_BUFFER_SIZE = 1024 * 64
DEFAULT_MAX_WRITE_BUFFER_SIZE = 1024 * 1024
DEFAULT_MAX_CONN_READ_TIMES_PER_EVENT_LOOP = 3
DEFAULT_UDP_READ_TIMEOUT = 120.0
MAX_OPEN_FILES = 1024 * 1024 * 2

_STOP_GRACE = 0.2
_ACCEPT_POLL = 0.2
_RETRY_DELAY = 1 / 20
_TEMPORARY_ACCEPT_ERRORS = (
    ConnectionAbortedError,
    ConnectionResetError,
    BlockingIOError,
    InterruptedError,
)
_STREAM_NETWORKS = ("unix", "tcp", "tcp4", "tcp6")
_UDP_NETWORKS = ("udp", "udp4", "udp6")
_FAMILIES = {
    "tcp": socket.AF_UNSPEC,
    "tcp4": socket.AF_INET,
    "tcp6": socket.AF_INET6,
    "udp": socket.AF_UNSPEC,
    "udp4": socket.AF_INET,
    "udp6": socket.AF_INET6,
}

ListenFunc = Callable[[str, str], socket.socket]


def _split_listen_addr(address: str) -> Tuple[Optional[str], int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise NBIOError(f"missing port in address {address}")
    try:
        port_num = int(port)
    except ValueError:
        raise NBIOError(f"invalid port in address {address}") from None
    host = host.strip("[]")
    return (host or None), port_num


def _bind(network: str, address: str, socktype: int) -> socket.socket:
    if network not in _FAMILIES:
        raise NBIOError(f"unknown network {network}")
    host, port = _split_listen_addr(address)
    infos = socket.getaddrinfo(
        host, port, _FAMILIES[network], socktype, 0, socket.AI_PASSIVE
    )
    last_err: Optional[OSError] = None
    for fam, typ, proto, _, sockaddr in infos:
        sock = socket.socket(fam, typ, proto)
        try:
            if os.name == "posix":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_err = exc
    raise last_err if last_err is not None else NBIOError(f"no address for {address}")


def default_listen(network: str, address: str) -> socket.socket:
    """Create a listening stream socket for "tcp*" or "unix"."""
    if network == "unix":
        family = getattr(socket, "AF_UNIX", None)
        if family is None:
            raise NBIOError("unknown network unix")
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.bind(address)
            sock.listen(socket.SOMAXCONN)
        except OSError:
            sock.close()
            raise
        return sock
    sock = _bind(network, address, socket.SOCK_STREAM)
    try:
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock


def default_listen_udp(network: str, address: str) -> socket.socket:
    """Create a bound datagram socket for "udp*"."""
    return _bind(network, address, socket.SOCK_DGRAM)


def _format_addr(sockname: Any) -> str:
    if isinstance(sockname, tuple):
        host, port = sockname[0], sockname[1]
        return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
    if isinstance(sockname, bytes):
        return sockname.decode(errors="replace")
    return str(sockname)


@dataclass
class Config:
    """Settings of an Engine; zero values select the defaults."""

    name: str = ""
    network: str = ""
    addrs: List[str] = field(default_factory=list)
    npoller: int = 0
    read_buffer_size: int = 0
    max_write_buffer_size: int = 0
    max_conn_read_times_per_event_loop: int = 0
    udp_read_timeout: float = 0.0
    timer_execute: Optional[Callable[[Callable[[], None]], None]] = None
    listen: Optional[ListenFunc] = None
    listen_udp: Optional[ListenFunc] = None


class _WaitGroup:
    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self, n: int = 1) -> None:
        with self._cond:
            self._count += n
            if self._count <= 0:
                self._cond.notify_all()

    def done(self) -> None:
        self.add(-1)

    def wait(self) -> None:
        with self._cond:
            while self._count > 0:
                self._cond.wait()


class _TimerHandle:
    __slots__ = ("func", "cancelled")

    def __init__(self, func: Callable[[], None]) -> None:
        self.func = func
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _TimerQueue:
    """Runs callbacks after delays on one background thread."""

    def __init__(
        self, name: str, execute: Optional[Callable[[Callable[[], None]], None]]
    ) -> None:
        self._name = name
        self._execute = execute
        self._heap: List[Tuple[float, int, _TimerHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    def after(self, delay: float, func: Callable[[], None]) -> _TimerHandle:
        handle = _TimerHandle(func)
        when = time.monotonic() + max(0.0, delay)
        with self._cond:
            heapq.heappush(self._heap, (when, next(self._seq), handle))
            self._cond.notify_all()
        return handle

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopped = False
            self._thread = threading.Thread(
                target=self._run, name=f"{self._name}-timer", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._heap.clear()
            self._cond.notify_all()

    def _fire(self, func: Callable[[], None]) -> None:
        try:
            if self._execute is not None:
                self._execute(func)
            else:
                func()
        except Exception as exc:
            log.error("timer execute failed: %s\n%s\n", exc, traceback.format_exc())

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                if not self._heap:
                    self._cond.wait()
                    continue
                when, _, handle = self._heap[0]
                if handle.cancelled:
                    heapq.heappop(self._heap)
                    continue
                remaining = when - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                heapq.heappop(self._heap)
                self._cond.release()
                try:
                    if not handle.cancelled:
                        self._fire(handle.func)
                finally:
                    self._cond.acquire()


class _Poller:
    """One selector thread serving the connections hashed to it."""

    def __init__(self, engine: "Engine", index: int) -> None:
        self.engine = engine
        self.index = index
        self.read_buffer = bytearray(engine.read_buffer_size)
        self._selector = selectors.DefaultSelector()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)
        self._ops: Deque[Callable[[], None]] = deque()
        self._ops_lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def submit(self, op: Callable[[], None]) -> None:
        with self._ops_lock:
            self._ops.append(op)
        self._wake()

    def _wake(self) -> None:
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def add_conn(self, conn: Conn) -> None:
        self.submit(lambda: self._register(conn))

    def remove_conn(self, conn: Conn) -> None:
        self.submit(lambda: self._unregister(conn))

    def modify(self, conn: Conn, events: int) -> None:
        self.submit(lambda: self._modify(conn, events))

    def _key_of(self, conn: Conn) -> Optional[selectors.SelectorKey]:
        try:
            key = self._selector.get_key(conn.hash_code)
        except (KeyError, ValueError):
            return None
        return key if key.data is conn else None

    def _register(self, conn: Conn) -> None:
        if conn.is_closed()[0]:
            return
        fd = conn.hash_code
        try:
            self._selector.unregister(fd)
        except (KeyError, ValueError):
            pass
        try:
            self._selector.register(fd, selectors.EVENT_READ, conn)
        except (KeyError, ValueError, OSError) as exc:
            conn.close_with_error(exc)

    def _unregister(self, conn: Conn) -> None:
        if self._key_of(conn) is None:
            return
        try:
            self._selector.unregister(conn.hash_code)
        except (KeyError, ValueError, OSError):
            pass

    def _modify(self, conn: Conn, events: int) -> None:
        if self._key_of(conn) is None or conn.is_closed()[0]:
            return
        try:
            self._selector.modify(conn.hash_code, events, conn)
        except (KeyError, ValueError, OSError):
            pass

    def _drain_ops(self) -> None:
        while True:
            with self._ops_lock:
                if not self._ops:
                    return
                op = self._ops.popleft()
            op()

    def _drain_wake(self) -> None:
        try:
            while self._wake_r.recv(4096):
                pass
        except OSError:
            pass

    def start(self) -> None:
        self._running = True
        self._thread = threading.Thread(
            target=self._run, name=f"{self.engine.name}-poller-{self.index}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        self._wake()

    def join(self) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def _run(self) -> None:
        try:
            while self._running:
                self._drain_ops()
                try:
                    events = self._selector.select()
                except OSError:
                    continue
                self._drain_ops()
                for key, mask in events:
                    if key.data is None:
                        self._drain_wake()
                        continue
                    self._handle(key.data, mask)
        finally:
            self._selector.close()
            self._wake_r.close()
            self._wake_w.close()

    def _handle(self, conn: Conn, mask: int) -> None:
        if mask & selectors.EVENT_WRITE:
            try:
                conn.flush()
            except (OSError, NBIOError):
                return
        if mask & selectors.EVENT_READ and not conn.is_closed()[0]:
            self.engine._handle_readable(conn)


class _Listener:
    """Accepts connections on a listening socket and passes them to pollers."""

    def __init__(self, engine: "Engine", sock: socket.socket) -> None:
        self.engine = engine
        self.sock = sock
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        sock.settimeout(_ACCEPT_POLL)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"{self.engine.name}-listener", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped:
            try:
                sock, _ = self.sock.accept()
            except socket.timeout:
                continue
            except _TEMPORARY_ACCEPT_ERRORS:
                log.error("Accept failed: temporary error, retrying...")
                time.sleep(_RETRY_DELAY)
                continue
            except OSError as exc:
                if not self._stopped:
                    log.error("Accept failed: %s, exit...", exc)
                return
            self.engine._accept(sock)

    def stop(self) -> None:
        self._stopped = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def join(self) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()


def _noop(*_: Any) -> None:
    return None


class Engine:
    """Runs pollers and listeners and calls the registered handlers.

    Handlers are set with the ``on_*``, ``before_*`` and ``after_*`` methods.
    """

    def __init__(self, config: Optional[Config] = None) -> None:
        conf = dataclasses.replace(config) if config is not None else Config()
        if not conf.name:
            conf.name = "NB"
        if conf.npoller <= 0:
            conf.npoller = os.cpu_count() or 1
        if conf.read_buffer_size <= 0:
            conf.read_buffer_size = DEFAULT_READ_BUFFER_SIZE
        if conf.max_conn_read_times_per_event_loop <= 0:
            conf.max_conn_read_times_per_event_loop = DEFAULT_MAX_CONN_READ_TIMES_PER_EVENT_LOOP
        if conf.listen is None:
            conf.listen = default_listen
        if conf.listen_udp is None:
            conf.listen_udp = default_listen_udp

        self.name = conf.name
        self.network = conf.network
        self.addrs = conf.addrs
        self.npoller = conf.npoller
        self.read_buffer_size = conf.read_buffer_size
        self.max_write_buffer_size = conf.max_write_buffer_size
        self.max_conn_read_times_per_event_loop = conf.max_conn_read_times_per_event_loop
        self.udp_read_timeout = conf.udp_read_timeout
        self.executor: Optional[Callable[[Callable[[], None]], None]] = None
        self._listen: ListenFunc = conf.listen
        self._listen_udp: ListenFunc = conf.listen_udp
        self._timer = _TimerQueue(conf.name, conf.timer_execute)

        self._lock = threading.Lock()
        self._wg_conn = _WaitGroup()
        self._conns: Set[Conn] = set()
        self._listeners: List[_Listener] = []
        self._pollers: List[_Poller] = []
        self._stopped = False

        self._on_read: Optional[Callable[[Conn], None]] = None
        self._init_handlers()

    def _init_handlers(self) -> None:
        self._wg_conn.add(1)
        self.on_open(_noop)
        self.on_close(_noop)
        self.on_data(_noop)
        self.on_read_buffer_alloc(self.poller_buffer)
        self.on_read_buffer_free(_noop)
        self.before_read(_noop)
        self.after_read(_noop)
        self.before_write(_noop)
        self.on_stop(_noop)

    # lifecycle

    def start(self) -> None:
        """Create listeners and pollers and start serving."""
        udp_socks: List[socket.socket] = []
        if self.network in _STREAM_NETWORKS:
            for i, addr in enumerate(self.addrs):
                try:
                    sock = self._listen(self.network, addr)
                except Exception:
                    for listener in self._listeners:
                        listener.stop()
                    self._listeners.clear()
                    raise
                self.addrs[i] = _format_addr(sock.getsockname())
                self._listeners.append(_Listener(self, sock))
        elif self.network in _UDP_NETWORKS:
            for i, addr in enumerate(self.addrs):
                try:
                    sock = self._listen_udp(self.network, addr)
                except Exception:
                    for s in udp_socks:
                        s.close()
                    raise
                self.addrs[i] = _format_addr(sock.getsockname())
                udp_socks.append(sock)

        try:
            for i in range(self.npoller):
                self._pollers.append(_Poller(self, i))
        except Exception:
            for listener in self._listeners:
                listener.stop()
            for s in udp_socks:
                s.close()
            self._pollers.clear()
            raise

        for poller in self._pollers:
            poller.start()
        for listener in self._listeners:
            listener.start()

        for sock in udp_socks:
            try:
                self.add_conn(sock)
            except Exception:
                for listener in self._listeners:
                    listener.stop()
                for poller in self._pollers:
                    poller.stop()
                for s in udp_socks:
                    s.close()
                raise

        self._timer.start()

        if not self.addrs:
            log.info("NBIO[%s] start", self.name)
        else:
            log.info(
                'NBIO[%s] start listen on: ["%s@%s"]',
                self.name,
                self.network,
                '", "'.join(self.addrs),
            )

    def stop(self) -> None:
        """Close listeners and connections, then stop the timer and pollers."""
        if self._stopped:
            return
        self._stopped = True
        for listener in self._listeners:
            listener.stop()

        with self._lock:
            conns = list(self._conns)
            self._conns.clear()

        self._wg_conn.done()
        for conn in conns:
            conn.close()
        self._wg_conn.wait()
        time.sleep(_STOP_GRACE)

        self._on_stop()
        self._timer.stop()

        for poller in self._pollers:
            poller.stop()
        for listener in self._listeners:
            listener.join()
        for poller in self._pollers:
            poller.join()
        log.info("NBIO[%s] stop", self.name)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the engine, raising TimeoutError if it takes longer than ``timeout``."""
        worker = threading.Thread(target=self.stop, daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            raise TimeoutError("engine shutdown timed out")

    # connections

    def add_conn(self, sock: Any) -> Conn:
        """Wrap ``sock`` and serve it on one of the pollers."""
        conn = nb_conn(sock)
        if not self._pollers:
            raise NBIOError("engine not started")
        self._add(conn)
        return conn

    def _poller_of(self, conn: Conn) -> _Poller:
        return self._pollers[conn.hash_code % len(self._pollers)]

    def _add(self, conn: Conn) -> None:
        if conn.hash_code >= MAX_OPEN_FILES:
            conn.close()
            return
        conn.engine = self
        with self._lock:
            self._conns.add(conn)
        if conn.conn_type is not ConnType.UDP_SERVER:
            self._on_open(conn)
        self._poller_of(conn).add_conn(conn)

    def _accept(self, sock: socket.socket) -> None:
        try:
            conn = nb_conn(sock)
        except Exception as exc:
            sock.close()
            log.error("accept conn failed: %s", exc)
            return
        self._add(conn)

    def _handle_readable(self, conn: Conn) -> None:
        if self._on_read is not None:
            try:
                self._on_read(conn)
            except Exception as exc:
                log.error("on read failed: %s\n%s\n", exc, traceback.format_exc())
            return
        udp = conn.is_udp()
        for _ in range(self.max_conn_read_times_per_event_loop):
            buf = self._borrow(conn)
            size = len(buf) if buf else self.read_buffer_size
            try:
                self._before_read(conn)
                if udp:
                    target, data = conn.read_udp(size)
                else:
                    target, data = conn, conn.read(size)
            except (BlockingIOError, InterruptedError, ConnClosedError):
                self._payback(conn, buf)
                return
            except (OSError, NBIOError) as exc:
                self._payback(conn, buf)
                conn.close_with_error(exc)
                return
            if not data and not udp:
                self._payback(conn, buf)
                conn.close_with_error(EOFError("EOF"))
                return
            try:
                self._on_data(target, data)
            except Exception as exc:
                log.error("on data failed: %s\n%s\n", exc, traceback.format_exc())
            self._payback(conn, buf)
            if len(data) < size:
                return

    # hooks used by connections

    def execute(self, func: Callable[[], None]) -> None:
        """Run ``func`` with the executor, or inline with errors logged."""
        if self.executor is not None:
            self.executor(func)
            return
        try:
            func()
        except Exception as exc:
            log.error("execute failed: %s\n%s\n", exc, traceback.format_exc())

    def after_func(self, delay: float, func: Callable[[], None]) -> _TimerHandle:
        """Call ``func`` after ``delay`` seconds; the result has ``cancel()``."""
        return self._timer.after(delay, func)

    def notify_before_write(self, conn: Conn) -> None:
        self._before_write(conn)

    def notify_after_read(self, conn: Conn) -> None:
        self._after_read(conn)

    def notify_open(self, conn: Conn) -> None:
        with self._lock:
            self._conns.add(conn)
        self._on_open(conn)

    def mod_write(self, conn: Conn) -> None:
        if self._pollers:
            self._poller_of(conn).modify(conn, selectors.EVENT_READ | selectors.EVENT_WRITE)

    def reset_read(self, conn: Conn) -> None:
        if self._pollers:
            self._poller_of(conn).modify(conn, selectors.EVENT_READ)

    def delete_conn(self, conn: Conn) -> None:
        with self._lock:
            self._conns.discard(conn)
        if conn.conn_type is not ConnType.UDP_CLIENT_FROM_READ and self._pollers:
            self._poller_of(conn).remove_conn(conn)
        if conn.conn_type is not ConnType.UDP_SERVER:
            self._on_close(conn, conn.is_closed()[1])

    # handler registration

    @staticmethod
    def _check(handler: Any) -> None:
        if handler is None:
            raise ValueError("invalid nil handler")

    def on_open(self, handler: Callable[[Conn], None]) -> None:
        """Register the callback for a new connection."""
        self._check(handler)

        def opened(conn: Conn) -> None:
            self._wg_conn.add(1)
            handler(conn)

        self._on_open = opened

    def on_close(self, handler: Callable[[Conn, Optional[BaseException]], None]) -> None:
        """Register the callback for a closed connection; it runs on its own thread."""
        self._check(handler)

        def closed(conn: Conn, err: Optional[BaseException]) -> None:
            def run() -> None:
                try:
                    handler(conn, err)
                except Exception as exc:
                    log.error("on close failed: %s\n%s\n", exc, traceback.format_exc())
                finally:
                    self._wg_conn.done()

            threading.Thread(target=run, daemon=True).start()

        self._on_close = closed

    def on_read(self, handler: Optional[Callable[[Conn], None]]) -> None:
        """Register a callback that does the reading itself; None restores the default."""
        self._on_read = handler

    def on_data(self, handler: Callable[[Conn, bytes], None]) -> None:
        self._check(handler)
        self._on_data = handler

    def on_read_buffer_alloc(self, handler: Callable[[Conn], bytearray]) -> None:
        self._check(handler)
        self._borrow = handler

    def on_read_buffer_free(self, handler: Callable[[Conn, bytearray], None]) -> None:
        self._check(handler)
        self._payback = handler

    def before_read(self, handler: Callable[[Conn], None]) -> None:
        self._check(handler)
        self._before_read = handler

    def after_read(self, handler: Callable[[Conn], None]) -> None:
        self._check(handler)
        self._after_read = handler

    def before_write(self, handler: Callable[[Conn], None]) -> None:
        self._check(handler)
        self._before_write = handler

    def on_stop(self, handler: Callable[[], None]) -> None:
        self._check(handler)
        self._on_stop = handler

    def poller_buffer(self, conn: Conn) -> bytearray:
        """The read buffer of the poller serving ``conn``."""
        if not self._pollers:
            raise NBIOError("engine not started")
        return self._poller_of(conn).read_buffer