"""
Lifecycle controller for the embedded HTTP server.

EmbedHttpServer is the object a controlling process holds. It owns a
dedicated event loop on a background thread, so start(), stop() and
complete() are plain blocking calls usable from any thread:

    server = EmbedHttpServer()

    @server.route('GET', '/ping')
    def ping(request):
        return Response.text('pong')

    @server.route('GET', '/sign/{account}')
    def sign(request):
        return Deferred(on_parked=lambda token, req: ui_queue.put((token, req)))

    port = server.start(8080)
    ...
    server.complete(token, 200, [('Content-Type', 'application/json')], body)
    ...
    server.stop()
"""

"""
Copyright 2025 Chris Bunting
File: server.py | Purpose: Embedded server lifecycle controller
@author Chris Bunting | @version 1.0.0

CHANGELOG:
2025-08-28 - Chris Bunting: Initial implementation
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Iterable, List, Optional, Tuple

from .core.config import ServerConfig
from .core.errors import AlreadyRunning, UnknownToken
from .core.pending import ParkCallback
from .core.router import Handler, RouteTable
from .core.server_core import ServerCore
from .core.server_utils import new_event_loop
from .features.metrics import install_builtin_routes

logger = logging.getLogger("embedserver")

RouteSpec = Tuple[str, str, Handler]


class EmbedHttpServer:
    """Start/stop control, route registration and completion entry point.

    Routes registered with register() persist across restarts; routes
    passed to start() apply to that run only. Every start() builds a fresh
    server core, so no pending state survives a stop().
    """

    def __init__(self, config: Optional[ServerConfig] = None, routes: Optional[RouteTable] = None):
        self.config = config or ServerConfig()
        self.routes = routes if routes is not None else RouteTable()
        self._lock = threading.RLock()
        self._park_listeners: List[ParkCallback] = []
        self._core: Optional[ServerCore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._core is not None

    @property
    def port(self) -> Optional[int]:
        core = self._core
        return core.port if core is not None else None

    @property
    def pending_count(self) -> int:
        core = self._core
        return len(core.registry) if core is not None else 0

    def register(self, method: str, pattern: str, handler: Handler):
        """Register a route before start.

        Raises:
            AlreadyRunning: If the server is running
            DuplicateRoute: If the method and pattern are already registered
        """
        with self._lock:
            if self.is_running:
                raise AlreadyRunning("Routes cannot be registered while the server is running")
            return self.routes.register(method, pattern, handler)

    def route(self, method: str, pattern: str):
        """Decorator form of register()."""
        def decorator(handler: Handler) -> Handler:
            self.register(method, pattern, handler)
            return handler
        return decorator

    def add_park_listener(self, callback: ParkCallback) -> None:
        """Call callback(token, request) on the server thread whenever a request parks."""
        with self._lock:
            self._park_listeners.append(callback)
            if self._core is not None:
                self._loop.call_soon_threadsafe(self._core.add_park_listener, callback)

    def _build_table(self, extra: Optional[Iterable[RouteSpec]]) -> RouteTable:
        table = RouteTable()
        for route in self.routes.routes():
            table.register(route.method, route.pattern, route.handler)
        for method, pattern, handler in extra or ():
            table.register(method, pattern, handler)
        if self.config.builtin_routes:
            install_builtin_routes(table)
        return table

    def start(self, port: Optional[int] = None, routes: Optional[Iterable[RouteSpec]] = None) -> int:
        """Bind the listening socket and start serving on a background thread.

        Args:
            port: Port to bind, defaults to config.port (0 = any free port)
            routes: Extra (method, pattern, handler) tuples for this run

        Returns:
            The bound port

        Raises:
            AlreadyRunning: If the server is already running
            BindFailure: If the port is unavailable
            DuplicateRoute: If the extra routes conflict
        """
        with self._lock:
            if self.is_running:
                raise AlreadyRunning("Server is already running")

            core = ServerCore(self._build_table(routes), self.config)
            for callback in self._park_listeners:
                core.add_park_listener(callback)

            loop = new_event_loop(self.config.use_uvloop)
            ready: Future = Future()
            thread = threading.Thread(
                target=self._run_loop, args=(loop, core, port, ready),
                name="embedserver-loop", daemon=True,
            )
            thread.start()
            try:
                bound = ready.result()
            except BaseException:
                thread.join()
                raise

            self._core, self._loop, self._thread = core, loop, thread
            return bound

    def _run_loop(self, loop: asyncio.AbstractEventLoop, core: ServerCore,
                  port: Optional[int], ready: Future) -> None:
        asyncio.set_event_loop(loop)
        try:
            try:
                bound = loop.run_until_complete(core.start(port=port))
            except Exception as e:
                ready.set_exception(e)
                return
            ready.set_result(bound)
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.run_until_complete(loop.shutdown_default_executor())
            finally:
                loop.close()

    def stop(self) -> None:
        """Stop serving.

        Every parked request is answered (503) and every connection closed
        before this returns. Calling stop() on a stopped server does nothing.
        """
        with self._lock:
            if self._core is None:
                return
            if threading.current_thread() is self._thread:
                raise RuntimeError("stop() cannot be called from the server thread")

            core, loop, thread = self._core, self._loop, self._thread
            try:
                asyncio.run_coroutine_threadsafe(core.shutdown(), loop).result()
            finally:
                loop.call_soon_threadsafe(loop.stop)
                thread.join()
                self._core = self._loop = self._thread = None
            logger.info("Embedded server stopped")

    def complete(self, token: str, status: int = 200, headers=None, body: bytes = b'') -> bool:
        """Resolve a parked request from any thread.

        Returns:
            False when the token is unknown, already completed or expired
        """
        core = self._core
        if core is None:
            logger.warning("Ignoring completion: %s", UnknownToken(token))
            return False
        return core.complete(token, status, headers, body)

    def __enter__(self) -> 'EmbedHttpServer':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
