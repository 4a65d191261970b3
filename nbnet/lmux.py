"""Split one listener into two, dispatching by how many connections the first holds."""

from __future__ import annotations

import socket
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from nbnet import log
from nbnet.errors import ConnClosedError

_EVENT_CAPACITY = 1024 * 64
_RETRY_DELAY = 1 / 20
_TEMPORARY_ERRORS = (
    ConnectionAbortedError,
    ConnectionResetError,
    BlockingIOError,
    InterruptedError,
    TimeoutError,
)


class ChanListener:
    """A listener fed with connections by a ListenerMux.

    ``accept`` returns ``(conn, address)`` like a listening socket.
    """

    def __init__(
        self,
        address: Any,
        closed: threading.Event,
        decrease: Optional[Callable[[], None]] = None,
    ) -> None:
        self.address = address
        self._closed = closed
        self._decrease = decrease
        self._events: deque = deque()
        self._cond = threading.Condition()

    def _push(self, conn: Any, addr: Any, err: Optional[BaseException]) -> None:
        with self._cond:
            while len(self._events) >= _EVENT_CAPACITY and not self._closed.is_set():
                self._cond.wait()
            self._events.append((conn, addr, err))
            self._cond.notify_all()

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def accept(self) -> tuple:
        """Wait for the next connection; raise once the mux is stopped."""
        with self._cond:
            while True:
                if self._closed.is_set():
                    raise ConnClosedError()
                if self._events:
                    conn, addr, err = self._events.popleft()
                    self._cond.notify_all()
                    if err is not None:
                        raise err
                    return conn, addr
                self._cond.wait()

    def close(self) -> None:
        """Wake waiting callers; stopping the ListenerMux ends their accepts."""
        self._wake()

    def decrease(self) -> None:
        """Mark one connection of the first listener as gone."""
        if self._decrease is not None:
            self._decrease()


class ListenerMux:
    """Accepts on real listeners and hands each connection to listener A or B.

    A new connection goes to A while A holds fewer than ``max_online_a``
    connections, otherwise to B.
    """

    def __init__(self, max_online_a: int) -> None:
        self._max_online_a = max_online_a
        self._online_a = 0
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._shutdown = False
        self._entries: list[tuple[Any, ChanListener, ChanListener]] = []

    def mux(self, listener: Any) -> tuple[Optional[ChanListener], Optional[ChanListener]]:
        """Register a listener and return its pair of channel listeners."""
        if listener is None:
            return None, None
        address = listener.getsockname()
        a = ChanListener(address, self._closed, self.decrease_online_a)
        b = ChanListener(address, self._closed)
        self._entries.append((listener, a, b))
        return a, b

    def start(self) -> None:
        """Start accepting on every registered listener."""
        self._shutdown = False
        for listener, a, b in self._entries:
            threading.Thread(
                target=self._serve, args=(listener, a, b), daemon=True
            ).start()

    def _take_slot_a(self) -> bool:
        with self._lock:
            self._online_a += 1
            if self._online_a <= self._max_online_a:
                return True
            self._online_a -= 1
            return False

    def _serve(self, listener: Any, a: ChanListener, b: ChanListener) -> None:
        while not self._shutdown:
            try:
                conn, addr = listener.accept()
            except _TEMPORARY_ERRORS:
                log.error("Accept failed: temporary error, retrying...")
                time.sleep(_RETRY_DELAY)
                continue
            except OSError as err:
                if not self._shutdown:
                    log.error("Accept failed: %s, exit...", err)
                a._push(None, None, err)
                b._push(None, None, err)
                return
            target = a if self._take_slot_a() else b
            target._push(conn, addr, None)

    def stop(self) -> None:
        """Close every registered listener and release waiting accepts."""
        self._shutdown = True
        for listener, a, b in self._entries:
            shutdown = getattr(listener, "shutdown", None)
            if shutdown is not None:
                try:
                    shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
            listener.close()
        self._closed.set()
        for _, a, b in self._entries:
            a.close()
            b.close()

    def decrease_online_a(self) -> None:
        with self._lock:
            self._online_a -= 1