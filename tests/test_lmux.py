import socket
import threading
import time

import pytest

from nbnet.errors import ConnClosedError
from nbnet.lmux import ListenerMux


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _Collector:
    def __init__(self, listener):
        self.listener = listener
        self.conns = []
        self.error = None
        self.lock = threading.Lock()
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        while True:
            try:
                conn, _ = self.listener.accept()
            except Exception as err:  # noqa: BLE001 - recorded for assertions
                self.error = err
                return
            with self.lock:
                self.conns.append(conn)

    def count(self):
        with self.lock:
            return len(self.conns)

    def drain(self):
        with self.lock:
            conns, self.conns = self.conns, []
        for conn in conns:
            conn.close()
            self.listener.decrease()


class _FakeListener:
    def __init__(self, results):
        self.results = list(results)
        self.closed = False

    def getsockname(self):
        return ("fake", 1)

    def accept(self):
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def close(self):
        self.closed = True


def test_retry_on_temporary_error_and_dispatch_by_limit():
    fatal = OSError(9, "bad file descriptor")
    fake = _FakeListener(
        [
            ConnectionAbortedError(),
            ("conn-1", "peer-1"),
            ("conn-2", "peer-2"),
            fatal,
        ]
    )
    lm = ListenerMux(1)
    a, b = lm.mux(fake)
    lm.start()
    assert a.accept() == ("conn-1", "peer-1")
    assert b.accept() == ("conn-2", "peer-2")
    with pytest.raises(OSError) as info_a:
        a.accept()
    assert info_a.value is fatal
    with pytest.raises(OSError) as info_b:
        b.accept()
    assert info_b.value is fatal
    lm.stop()
    assert fake.closed is True


def test_decrease_frees_slot_for_a():
    fake = _FakeListener(
        [("c1", "p1"), ("c2", "p2")] + [OSError(9, "done")]
    )
    lm = ListenerMux(1)
    a, b = lm.mux(fake)
    lm.start()
    assert a.accept() == ("c1", "p1")
    assert b.accept() == ("c2", "p2")
    a.decrease()
    b.decrease()
    fake2 = _FakeListener([("c3", "p3"), OSError(9, "done")])
    a2, _ = lm.mux(fake2)
    lm.start()
    assert a2.accept() == ("c3", "p3")
    lm.stop()


def test_mux_none_listener():
    assert ListenerMux(1).mux(None) == (None, None)


def test_chan_listener_close_is_noop():
    fake = _FakeListener([("c1", "p1"), OSError(9, "done")])
    lm = ListenerMux(5)
    a, _ = lm.mux(fake)
    a.close()
    lm.start()
    assert a.accept() == ("c1", "p1")
    lm.stop()