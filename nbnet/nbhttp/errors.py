"""Errors raised by the HTTP layer and the messages they carry."""

from __future__ import annotations

from nbnet.errors import NBIOError

INVALID_CRLF = "invalid cr/lf at the end of line"
INVALID_HTTP_VERSION = "invalid HTTP version"
INVALID_HTTP_STATUS_CODE = "invalid HTTP status code"
INVALID_HTTP_STATUS = "invalid HTTP status"
INVALID_METHOD = "invalid HTTP method"
INVALID_REQUEST_URI = "invalid URL"
INVALID_HOST = "invalid host"
INVALID_PORT = "invalid port"
INVALID_PATH = "invalid path"
INVALID_QUERY_STRING = "invalid query string"
INVALID_FRAGMENT = "invalid fragment"
CR_EXPECTED = "CR character expected"
LF_EXPECTED = "LF character expected"
INVALID_CHAR_IN_HEADER = "invalid character in header"
UNEXPECTED_CONTENT_LENGTH = "unexpected content-length header"
INVALID_CONTENT_LENGTH = "invalid ContentLength"
INVALID_CHUNK_SIZE = "invalid chunk size"
TRAILER_EXPECTED = "trailer expected"
TOO_LONG = "invalid http message: too long"

INVALID_H2_SM = "invalid http2 SM characters"
INVALID_H2_HEADER_R = "invalid http2 SM characters"

NIL_CONN = "nil Conn"

CLIENT_UNSUPPORTED_SCHEMA = "unsupported schema"
CLIENT_TIMEOUT = "timeout"
CLIENT_CLOSED = "http client closed"

SERVICE_OVERLOAD = "service overload"


class HTTPError(NBIOError):
    """A malformed or unacceptable HTTP message."""

    default_message = "invalid http message"


class ClientError(NBIOError):
    """A failure of the HTTP client or of a proxy it goes through."""

    default_message = "http client error"


class ServiceOverloadError(NBIOError):
    """The server already holds as many connections as it may."""

    default_message = SERVICE_OVERLOAD