"""
Request and response value types.

Requests are immutable once parsed. Responses are built by handlers (or by
the server on error) and serialized to HTTP/1.1 bytes by the server.
"""

import json
import re
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from http import HTTPStatus
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import InvalidResponse, MalformedRequest

# RFC 7230 token characters
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
# Control characters other than horizontal tab
_HEADER_VALUE_BAD_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

_NO_BODY_STATUSES = (204, 304)


class Method(str, Enum):
    """HTTP request methods understood by the server."""
    GET = 'GET'
    HEAD = 'HEAD'
    POST = 'POST'
    PUT = 'PUT'
    DELETE = 'DELETE'
    PATCH = 'PATCH'
    OPTIONS = 'OPTIONS'

    @classmethod
    def parse(cls, value: Union[str, bytes, 'Method']) -> 'Method':
        """Convert a raw method token, failing with MalformedRequest."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bytes):
            value = value.decode('ascii', errors='replace')
        try:
            return cls(value.upper())
        except ValueError:
            raise MalformedRequest(f"Unsupported method: {value}", status=501)

    def __str__(self) -> str:
        return self.value


class Headers(Mapping):
    """Read-only header mapping with case-insensitive lookup.

    Iteration yields names in the spelling first seen on the wire. Repeated
    headers are folded into one comma-separated value.
    """

    def __init__(self, items: Union[Mapping, Iterable[Tuple[str, str]]] = ()):
        if isinstance(items, Mapping):
            items = items.items()
        self._raw: Tuple[Tuple[str, str], ...] = tuple((str(k), str(v)) for k, v in items)
        self._values: Dict[str, str] = {}
        self._names: Dict[str, str] = {}
        for name, value in self._raw:
            key = name.lower()
            if key in self._values:
                self._values[key] = f"{self._values[key]}, {value}"
            else:
                self._values[key] = value
                self._names[key] = name

    def __getitem__(self, name: str) -> str:
        return self._values[name.lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._values)

    def raw(self) -> Tuple[Tuple[str, str], ...]:
        """Header pairs exactly as received, duplicates included."""
        return self._raw

    def __repr__(self) -> str:
        return f"Headers({list(self._raw)!r})"


@dataclass(frozen=True)
class Request:
    """An inbound HTTP request.

    Attributes:
        method: Request method
        path: Path as sent by the client, without the query string
        query: Query parameters; the last value wins for repeated keys
        headers: Case-insensitive request headers
        body: Request body, empty when none was sent
        http_version: Protocol version such as "1.1"
        keep_alive: Whether the client allows reusing the connection
        path_params: Values bound by templated route segments
        request_id: Identifier used to correlate log records
    """
    method: Method
    path: str
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Headers = field(default_factory=Headers)
    body: bytes = b''
    http_version: str = '1.1'
    keep_alive: bool = True
    path_params: Mapping[str, str] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, 'method', Method.parse(self.method))
        object.__setattr__(self, 'query', MappingProxyType(dict(self.query)))
        if not isinstance(self.headers, Headers):
            object.__setattr__(self, 'headers', Headers(self.headers))
        object.__setattr__(self, 'path_params', MappingProxyType(dict(self.path_params)))
        object.__setattr__(self, 'body', bytes(self.body))

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.body or b'null')

    def with_path_params(self, params: Mapping[str, str]) -> 'Request':
        return replace(self, path_params=params)


@dataclass
class Response:
    """An outgoing HTTP response.

    Attributes:
        status: HTTP status code
        headers: Header pairs in the order they are written
        body: Response body
    """
    status: int = 200
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b''

    def __post_init__(self):
        if isinstance(self.headers, Mapping):
            self.headers = list(self.headers.items())
        else:
            self.headers = [tuple(pair) for pair in self.headers]
        if isinstance(self.body, str):
            self.body = self.body.encode('utf-8')
        elif self.body is None:
            self.body = b''
        else:
            self.body = bytes(self.body)

    @classmethod
    def text(cls, text: str, status: int = 200,
             content_type: str = 'text/plain; charset=utf-8') -> 'Response':
        return cls(status, [('Content-Type', content_type)], text.encode('utf-8'))

    @classmethod
    def json(cls, data: Any, status: int = 200) -> 'Response':
        body = json.dumps(data, separators=(',', ':')).encode('utf-8')
        return cls(status, [('Content-Type', 'application/json')], body)

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lower = name.lower()
        for key, value in self.headers:
            if key.lower() == lower:
                return value
        return default

    @property
    def wants_close(self) -> bool:
        """True when the handler asked for the connection to be closed."""
        connection = self.get_header('Connection', '')
        return 'close' in connection.lower()

    def serialize(self, keep_alive: bool = True, head: bool = False) -> bytes:
        """Render the response as HTTP/1.1 bytes.

        Args:
            keep_alive: Value for the Connection header when the handler
                did not set one
            head: Omit the body (HEAD request) but keep Content-Length

        Raises:
            InvalidResponse: If the status, a header or the framing is invalid
        """
        status = self.status
        if not isinstance(status, int) or isinstance(status, bool) or not 100 <= status <= 599:
            raise InvalidResponse(f"Invalid status code: {status!r}")

        bodiless = status < 200 or status in _NO_BODY_STATUSES
        if bodiless and self.body:
            raise InvalidResponse(f"Status {status} must not carry a body")

        lines = [f'HTTP/1.1 {status} {reason_phrase(status)}']
        has_length = False
        has_connection = False

        for name, value in self.headers:
            name = str(name)
            value = str(value)
            if not _HEADER_NAME_RE.match(name):
                raise InvalidResponse(f"Invalid header name: {name!r}")
            if _HEADER_VALUE_BAD_RE.search(value):
                raise InvalidResponse(f"Invalid value for header {name}")

            lower = name.lower()
            if lower == 'content-length':
                if value.strip() != str(len(self.body)):
                    raise InvalidResponse("Content-Length does not match body length")
                has_length = True
            elif lower == 'transfer-encoding':
                raise InvalidResponse("Transfer-Encoding is managed by the server")
            elif lower == 'connection':
                has_connection = True
            lines.append(f'{name}: {value}')

        if not has_length and not bodiless:
            lines.append(f'Content-Length: {len(self.body)}')
        if not has_connection:
            lines.append('Connection: keep-alive' if keep_alive else 'Connection: close')

        try:
            head_bytes = ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1')
        except UnicodeEncodeError:
            raise InvalidResponse("Header values must be latin-1 encodable")

        if head or bodiless:
            return head_bytes
        return head_bytes + self.body


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return 'Unknown'


def error_response(status: int, headers: Optional[List[Tuple[str, str]]] = None) -> Response:
    """Build a plain-text error response carrying only the reason phrase."""
    response = Response.text(reason_phrase(status), status=status)
    if headers:
        response.headers.extend(headers)
    return response
