"""
Core server components
"""

from .errors import (
    EmbedServerError, MalformedRequest, InvalidResponse, NoRoute, DuplicateRoute,
    BindFailure, AlreadyRunning, ServerShutdown, HandlerFault, UnknownToken,
)
from .config import ServerConfig
from .models import Method, Headers, Request, Response, error_response
from .http_parser import RequestParser, parse_request
from .router import Route, RouteMatch, RouteTable
from .pending import Deferred, PendingOperation, PendingRegistry
from .server_core import ServerCore

# Expose public interface
__all__ = [
    "EmbedServerError", "MalformedRequest", "InvalidResponse", "NoRoute", "DuplicateRoute",
    "BindFailure", "AlreadyRunning", "ServerShutdown", "HandlerFault", "UnknownToken",
    "ServerConfig", "Method", "Headers", "Request", "Response", "error_response",
    "RequestParser", "parse_request", "Route", "RouteMatch", "RouteTable",
    "Deferred", "PendingOperation", "PendingRegistry", "ServerCore",
]
