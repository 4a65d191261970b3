"""Dialers that reach a target address through an HTTP or SOCKS5 proxy."""

from __future__ import annotations

import base64
import ipaddress
import socket
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union
from urllib.parse import SplitResult, unquote, urlsplit

from nbnet.nbhttp.errors import ClientError

DialFunc = Callable[[str, str], Any]
DialerFactory = Callable[[SplitResult, DialFunc], Any]
URLLike = Union[str, SplitResult]

_SOCKS5_VERSION = 5
_SOCKS5_AUTH_NONE = 0
_SOCKS5_AUTH_PASSWORD = 2
_SOCKS5_CONNECT = 1
_SOCKS5_IP4 = 1
_SOCKS5_DOMAIN = 3
_SOCKS5_IP6 = 4

_SOCKS5_ERRORS = [
    "",
    "general failure",
    "connection forbidden",
    "network unreachable",
    "host unreachable",
    "connection refused",
    "TTL expired",
    "command not supported",
    "address type not supported",
]


@dataclass
class ProxyAuth:
    """Credentials for a proxy."""

    user: str = ""
    password: str = ""


def _as_url(url: URLLike) -> SplitResult:
    return urlsplit(url) if isinstance(url, str) else url


def _host_of(url: SplitResult) -> str:
    return url.netloc.rpartition("@")[2]


def _as_dial(forward: Any) -> DialFunc:
    if forward is None:
        return _dial_tcp
    dial = getattr(forward, "dial", None)
    return dial if callable(dial) else forward


def _split_host_port(addr: str) -> Tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ClientError(f"address {addr}: missing ']' in address")
        host, rest = addr[1:end], addr[end + 1 :]
        if not rest.startswith(":"):
            raise ClientError(f"address {addr}: missing port in address")
        return host, rest[1:]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ClientError(f"address {addr}: missing port in address")
    if ":" in host:
        raise ClientError(f"address {addr}: too many colons in address")
    return host, port


def _dial_tcp(network: str, addr: str) -> socket.socket:
    host, port = _split_host_port(addr)
    try:
        port_num = int(port)
    except ValueError:
        raise ClientError(f"address {addr}: invalid port") from None
    return socket.create_connection((host, port_num))


def _read_full(conn: Any, n: int) -> bytes:
    data = bytearray()
    while len(data) < n:
        chunk = conn.recv(n - len(data))
        if not chunk:
            raise EOFError("unexpected EOF")
        data += chunk
    return bytes(data)


def host_port_no_port(url: URLLike) -> Tuple[str, str]:
    """Return the URL's host with a port (the scheme's default if none) and without."""
    u = _as_url(url)
    host = _host_of(u)
    host_port = host_no_port = host
    i = host.rfind(":")
    if i > host.rfind("]"):
        host_no_port = host[:i]
    elif u.scheme in ("wss", "https"):
        host_port += ":443"
    else:
        host_port += ":80"
    return host_port, host_no_port


class HTTPProxyDialer:
    """Opens a tunnel with an HTTP CONNECT request."""

    def __init__(self, proxy_url: URLLike, forward_dial: Optional[DialFunc] = None) -> None:
        self.proxy_url = _as_url(proxy_url)
        self.forward_dial = _as_dial(forward_dial)

    def dial(self, network: str, addr: str) -> Any:
        host_port, _ = host_port_no_port(self.proxy_url)
        conn = self.forward_dial(network, host_port)

        lines = [f"CONNECT {addr} HTTP/1.1", f"Host: {addr}"]
        if self.proxy_url.password is not None:
            user = unquote(self.proxy_url.username or "")
            credential = base64.b64encode(
                f"{user}:{unquote(self.proxy_url.password)}".encode()
            ).decode()
            lines.append(f"Proxy-Authorization: Basic {credential}")
        request = ("\r\n".join(lines) + "\r\n\r\n").encode()

        try:
            conn.sendall(request)
            code, reason = self._read_response(conn)
        except BaseException:
            conn.close()
            raise
        if code != 200:
            conn.close()
            raise ClientError(reason)
        return conn

    @staticmethod
    def _read_response(conn: Any) -> Tuple[int, str]:
        head = bytearray()
        while not head.endswith(b"\r\n\r\n"):
            head += _read_full(conn, 1)
        status_line = head.decode("latin-1").split("\r\n", 1)[0]
        proto, _, rest = status_line.partition(" ")
        code, _, reason = rest.partition(" ")
        if not proto.startswith("HTTP/") or len(code) != 3 or not code.isdigit():
            raise ClientError(f"malformed HTTP response {status_line!r}")
        return int(code), reason


class Socks5Dialer:
    """Connects to targets through a SOCKS5 proxy."""

    def __init__(
        self,
        network: str,
        addr: str,
        auth: Optional[ProxyAuth] = None,
        forward: Any = None,
    ) -> None:
        self.network = network
        self.addr = addr
        self.user = auth.user if auth is not None else ""
        self.password = auth.password if auth is not None else ""
        self.forward = _as_dial(forward)

    def dial(self, network: str, addr: str) -> Any:
        if network not in ("tcp", "tcp6", "tcp4"):
            raise ClientError(
                "proxy: no support for SOCKS5 proxy connections of type " + network
            )
        conn = self.forward(self.network, self.addr)
        try:
            self._connect(conn, addr)
        except BaseException:
            conn.close()
            raise
        return conn

    def _send(self, conn: Any, data: bytes, what: str) -> None:
        try:
            conn.sendall(data)
        except OSError as exc:
            raise ClientError(
                f"proxy: failed to write {what} to SOCKS5 proxy at {self.addr}: {exc}"
            ) from exc

    def _recv(self, conn: Any, n: int, what: str) -> bytes:
        try:
            return _read_full(conn, n)
        except (OSError, EOFError) as exc:
            raise ClientError(
                f"proxy: failed to read {what} from SOCKS5 proxy at {self.addr}: {exc}"
            ) from exc

    def _connect(self, conn: Any, target: str) -> None:
        host, port_str = _split_host_port(target)
        try:
            port = int(port_str)
        except ValueError:
            raise ClientError("proxy: failed to parse port number: " + port_str) from None
        if port < 1 or port > 0xFFFF:
            raise ClientError("proxy: port number out of range: " + port_str)

        user = self.user.encode()
        password = self.password.encode()
        if 0 < len(user) < 256 and len(password) < 256:
            greeting = bytes(
                [_SOCKS5_VERSION, 2, _SOCKS5_AUTH_NONE, _SOCKS5_AUTH_PASSWORD]
            )
        else:
            greeting = bytes([_SOCKS5_VERSION, 1, _SOCKS5_AUTH_NONE])
        self._send(conn, greeting, "greeting")

        reply = self._recv(conn, 2, "greeting")
        if reply[0] != 5:
            raise ClientError(
                f"proxy: SOCKS5 proxy at {self.addr} has unexpected version {reply[0]}"
            )
        if reply[1] == 0xFF:
            raise ClientError(f"proxy: SOCKS5 proxy at {self.addr} requires authentication")

        if reply[1] == _SOCKS5_AUTH_PASSWORD:
            auth = bytes([1, len(user) & 0xFF]) + user + bytes([len(password) & 0xFF]) + password
            self._send(conn, auth, "authentication request")
            auth_reply = self._recv(conn, 2, "authentication reply")
            if auth_reply[1] != 0:
                raise ClientError(
                    f"proxy: SOCKS5 proxy at {self.addr} rejected username/password"
                )

        request = bytearray([_SOCKS5_VERSION, _SOCKS5_CONNECT, 0])
        try:
            ip: Optional[Any] = ipaddress.ip_address(host)
        except ValueError:
            ip = None
        if ip is not None:
            if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
                ip = ip.ipv4_mapped
            request.append(_SOCKS5_IP4 if ip.version == 4 else _SOCKS5_IP6)
            request += ip.packed
        else:
            host_bytes = host.encode()
            if len(host_bytes) > 255:
                raise ClientError("proxy: destination host name too long: " + host)
            request.append(_SOCKS5_DOMAIN)
            request.append(len(host_bytes))
            request += host_bytes
        request += port.to_bytes(2, "big")
        self._send(conn, bytes(request), "connect request")

        reply = self._recv(conn, 4, "connect reply")
        failure = _SOCKS5_ERRORS[reply[1]] if reply[1] < len(_SOCKS5_ERRORS) else "unknown error"
        if failure:
            raise ClientError(
                f"proxy: SOCKS5 proxy at {self.addr} failed to connect: {failure}"
            )

        addr_type = reply[3]
        if addr_type == _SOCKS5_IP4:
            to_discard = 4
        elif addr_type == _SOCKS5_IP6:
            to_discard = 16
        elif addr_type == _SOCKS5_DOMAIN:
            to_discard = self._recv(conn, 1, "domain length")[0]
        else:
            raise ClientError(
                f"proxy: got unknown address type {addr_type} from SOCKS5 proxy at {self.addr}"
            )
        self._recv(conn, to_discard, "address")
        self._recv(conn, 2, "port")


_schemes: Dict[str, DialerFactory] = {}


def register_dialer_type(scheme: str, factory: DialerFactory) -> None:
    """Make ``proxy_from_url`` build dialers for ``scheme`` with ``factory(url, forward)``."""
    _schemes[scheme] = factory


def proxy_from_url(url: URLLike, forward: Any = None) -> Any:
    """Build a dialer for the proxy at ``url`` that reaches it through ``forward``."""
    u = _as_url(url)
    dial = _as_dial(forward)
    auth: Optional[ProxyAuth] = None
    if "@" in u.netloc:
        auth = ProxyAuth(
            user=unquote(u.username or ""), password=unquote(u.password or "")
        )
    if u.scheme == "socks5":
        return Socks5Dialer("tcp", _host_of(u), auth, dial)
    factory = _schemes.get(u.scheme)
    if factory is not None:
        return factory(u, dial)
    raise ClientError("proxy: unknown scheme: " + u.scheme)


register_dialer_type("http", lambda u, forward: HTTPProxyDialer(u, forward))