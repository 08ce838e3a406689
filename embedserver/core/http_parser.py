"""
HTTP request parser using httptools for efficient parsing.

This module provides an incremental request parser with:
- Strict size limits for URLs, headers and bodies
- Content-Length and chunked request bodies
- Pipelined requests (several requests completed by one feed)
- Conversion of every parse failure into MalformedRequest
"""

from collections import deque
from typing import Deque, List, Optional, Tuple
from urllib.parse import parse_qsl

import httptools

from .errors import MalformedRequest
from .models import Headers, Method, Request


class RequestParser:
    """Parses a byte stream into Request objects using httptools callbacks.

    The httptools parser calls back into this object as it consumes data;
    every completed message is turned into an immutable Request and queued.

    Constants:
        MAX_URL_SIZE: Maximum request target length (8KB)
        MAX_HEADER_NAME: Maximum header name length (256 bytes)
        MAX_HEADER_SIZE: Maximum size per header value (8KB)
        MAX_HEADERS: Maximum number of headers per request (100)
    """
    MAX_URL_SIZE = 8192
    MAX_HEADER_NAME = 256
    MAX_HEADER_SIZE = 8192
    MAX_HEADERS = 100

    def __init__(self, body_limit: int = 10 * 1024 * 1024):
        self.body_limit = body_limit
        self._parser = httptools.HttpRequestParser(self)
        self._completed: Deque[Request] = deque()
        self._error: Optional[MalformedRequest] = None
        self._in_message = False
        self._reset_message()

    def _reset_message(self) -> None:
        self._url = b''
        self._headers: List[Tuple[str, str]] = []
        self._body: List[bytes] = []
        self._body_size = 0
        self._method: Optional[bytes] = None
        self._version = '1.1'
        self._keep_alive = True

    def _fail(self, message: str, status: int = 400) -> None:
        self._error = MalformedRequest(message, status=status)
        raise self._error

    # httptools callbacks

    def on_message_begin(self) -> None:
        self._reset_message()
        self._in_message = True

    def on_url(self, url: bytes) -> None:
        self._url += url
        if len(self._url) > self.MAX_URL_SIZE:
            self._fail("URL too long", status=414)

    def on_header(self, name: bytes, value: bytes) -> None:
        if len(self._headers) >= self.MAX_HEADERS:
            self._fail("Too many headers", status=431)
        if len(name) > self.MAX_HEADER_NAME:
            self._fail("Header name too long", status=431)
        if len(value) > self.MAX_HEADER_SIZE:
            self._fail("Header value too long", status=431)
        try:
            name_str = name.decode('ascii')
        except UnicodeDecodeError:
            self._fail("Invalid header encoding")
        self._headers.append((name_str, value.decode('latin-1')))

    def on_headers_complete(self) -> None:
        self._method = self._parser.get_method()
        self._version = self._parser.get_http_version()
        self._keep_alive = self._parser.should_keep_alive()

    def on_body(self, body: bytes) -> None:
        self._body_size += len(body)
        if self._body_size > self.body_limit:
            self._fail("Request body too large", status=413)
        self._body.append(body)

    def on_message_complete(self) -> None:
        self._in_message = False
        try:
            url = httptools.parse_url(self._url)
        except httptools.HttpParserInvalidURLError:
            self._fail("Invalid request target")

        path = (url.path or b'/').decode('latin-1')
        query = {}
        if url.query:
            query = dict(parse_qsl(url.query.decode('latin-1'), keep_blank_values=True))

        try:
            method = Method.parse(self._method or b'')
        except MalformedRequest as e:
            self._error = e
            raise

        self._completed.append(Request(
            method=method,
            path=path,
            query=query,
            headers=Headers(self._headers),
            body=b''.join(self._body),
            http_version=self._version,
            keep_alive=self._keep_alive,
        ))

    # public interface

    def feed_data(self, data: bytes) -> None:
        """Feed raw bytes to the parser.

        Raises:
            MalformedRequest: If the data is not a valid HTTP/1.x request
                stream or exceeds a limit
        """
        if self._error is not None:
            raise self._error
        try:
            self._parser.feed_data(data)
        except httptools.HttpParserUpgrade:
            self._error = MalformedRequest("Protocol upgrade not supported")
            raise self._error
        except httptools.HttpParserError as e:
            if self._error is not None:
                raise self._error from None
            self._error = MalformedRequest(f"Invalid HTTP request: {e}")
            raise self._error from None

    def next_request(self) -> Optional[Request]:
        """Pop the oldest completed request, or None."""
        if self._completed:
            return self._completed.popleft()
        return None

    @property
    def has_partial(self) -> bool:
        """True while bytes of an unfinished request are buffered."""
        return self._in_message


def parse_request(raw: bytes, body_limit: int = 10 * 1024 * 1024) -> Request:
    """Parse exactly one complete request from raw bytes.

    Raises:
        MalformedRequest: On an unparseable start line, invalid header
            syntax, a body shorter than Content-Length, or trailing data
    """
    parser = RequestParser(body_limit=body_limit)
    parser.feed_data(raw)
    request = parser.next_request()
    if request is None:
        raise MalformedRequest("Incomplete request")
    if parser.next_request() is not None or parser.has_partial:
        raise MalformedRequest("Unexpected data after request")
    return request
