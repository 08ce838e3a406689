from .core import (
    ServerCore, ServerConfig, RouteTable, Request, Response, Deferred, Method,
    PendingRegistry, parse_request, error_response,
    EmbedServerError, MalformedRequest, InvalidResponse, NoRoute, DuplicateRoute,
    BindFailure, AlreadyRunning, ServerShutdown, HandlerFault, UnknownToken,
)
from .server import EmbedHttpServer
from .features import IPFilter, install_builtin_routes

__version__ = '1.0.0'

__all__ = [
    # Lifecycle
    'EmbedHttpServer',

    # Core components
    'ServerCore',
    'ServerConfig',
    'RouteTable',
    'Request',
    'Response',
    'Deferred',
    'Method',
    'PendingRegistry',
    'parse_request',
    'error_response',

    # Errors
    'EmbedServerError',
    'MalformedRequest',
    'InvalidResponse',
    'NoRoute',
    'DuplicateRoute',
    'BindFailure',
    'AlreadyRunning',
    'ServerShutdown',
    'HandlerFault',
    'UnknownToken',

    # Features
    'IPFilter',
    'install_builtin_routes',
]
