"""
Exception taxonomy for the embedded HTTP server.

Parsing and routing errors are recovered inside the connection handler and
turned into HTTP error responses. Lifecycle errors surface synchronously to
the caller of ``start``.
"""

from typing import Iterable, Optional


class EmbedServerError(Exception):
    """Base class for all embedded server errors."""
    pass


class MalformedRequest(EmbedServerError):
    """Raised when raw bytes cannot be parsed into a request.

    Attributes:
        status: HTTP status code used for the error response
    """

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class InvalidResponse(EmbedServerError):
    """Raised when a response cannot be serialized to the wire."""
    pass


class NoRoute(EmbedServerError):
    """Raised when no registered route matches a request.

    Attributes:
        method: Request method
        path: Request path
        allowed: Methods that would have matched the path, empty when
            the path itself is unknown
    """

    def __init__(self, method: str, path: str, allowed: Optional[Iterable[str]] = None):
        self.method = method
        self.path = path
        self.allowed = tuple(sorted(allowed or ()))
        super().__init__(f"No route for {method} {path}")


class DuplicateRoute(EmbedServerError):
    """Raised when a (method, pattern) pair is registered twice."""
    pass


class BindFailure(EmbedServerError):
    """Raised when the listening socket cannot be bound."""
    pass


class AlreadyRunning(EmbedServerError):
    """Raised on start, or on route registration, while the server runs."""
    pass


class ServerShutdown(EmbedServerError):
    """Delivered to parked connections when the server stops."""
    pass


class HandlerFault(EmbedServerError):
    """Wraps an exception raised by (or a bad value returned from) a handler."""

    def __init__(self, route: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.route = route
        self.cause = cause
        super().__init__(message or f"Handler for {route} failed: {cause!r}")


class UnknownToken(EmbedServerError):
    """Raised when a completion token is not (or no longer) registered."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unknown or expired token: {token}")
