"""
Core embedded HTTP server providing asynchronous request handling.

This module implements the server core with:
- One asyncio task per accepted connection, keep-alive and pipelining
- Route dispatch with synchronous, coroutine and deferred handlers
- Parking of deferred requests until the controlling process completes them
- Periodic expiry of parked requests
- Graceful shutdown that resolves every parked request before returning
"""

import asyncio
import inspect
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Set, Tuple

from .config import ServerConfig
from .errors import (
    AlreadyRunning, BindFailure, HandlerFault, InvalidResponse, MalformedRequest,
    NoRoute, ServerShutdown,
)
from .http_parser import RequestParser
from .models import Method, Request, Response, error_response
from .pending import Deferred, ParkCallback, ParkedConnection, PendingRegistry
from .router import Handler, RouteTable
from .server_utils import configure_client_socket, get_server_kwargs, log_access, peer_address
from ..features.metrics import REQ_ERRORS, REQ_IN_FLIGHT, REQ_LATENCY, REQ_TOTAL
from ..features.security import IPFilter

logger = logging.getLogger("embedserver.server")

IDLE = 'idle'
READING = 'reading'
BUSY = 'busy'
WRITING = 'writing'
PARKED = 'parked'

# Bounds on how long and how much unread input is drained before closing
LINGER_TIMEOUT = 1.0
LINGER_LIMIT = 4 * 1024 * 1024


async def discard_input(reader: asyncio.StreamReader, timeout: float = LINGER_TIMEOUT,
                        limit: int = LINGER_LIMIT) -> None:
    """Read and drop client input until EOF, timeout or limit.

    Closing a socket with unread input makes the kernel reset the
    connection, which destroys a response the client has not read yet.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    received = 0
    while received < limit:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            data = await asyncio.wait_for(reader.read(65536), timeout=remaining)
        except (asyncio.TimeoutError, ConnectionError):
            break
        if not data:
            break
        received += len(data)


async def send_closing_error(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                             status: int, client: str, linger: bool = True) -> None:
    """Write an error response that ends the connection.

    With linger the write side is half-closed and pending input drained, so
    the response survives until the client reads it.
    """
    try:
        writer.write(error_response(status).serialize(keep_alive=False))
        await writer.drain()
        if linger and writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError):
        logger.debug("Could not send %d to %s", status, client)
        return
    if linger:
        await discard_input(reader)


def _notify_parked(callbacks: List[ParkCallback], token: str, request: Request) -> None:
    for callback in callbacks:
        callback(token, request)


class Connection:
    """Serves the requests of one client connection in order.

    The state attribute tells shutdown what the connection is doing:
    idle connections are closed at once, busy and parked ones are
    allowed to finish their current response. A handler still busy when
    the grace period ends is cancelled and its client answered 503.
    """

    def __init__(self, core: 'ServerCore', reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.core = core
        self.reader = reader
        self.writer = writer
        self.parser = RequestParser(body_limit=core.config.body_limit)
        self.state = IDLE
        self.requests_handled = 0
        self.task: Optional[asyncio.Task] = None
        self._parse_error: Optional[MalformedRequest] = None

        peer = writer.get_extra_info('peername')
        self.client = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    async def run(self) -> None:
        """Handle keep-alive connection with multiple requests"""
        cap = self.core.config.max_requests_per_connection
        while self.requests_handled < cap:
            request = await self._read_request()
            if request is None:
                break
            keep_alive = await self._handle(request)
            self.requests_handled += 1
            if not keep_alive:
                break

    async def _read_request(self) -> Optional[Request]:
        """Return the next complete request, or None when the connection ends.

        Requests already completed by the parser are served before a parse
        error queued behind them is reported.
        """
        config = self.core.config
        while True:
            request = self.parser.next_request()
            if request is not None:
                return request
            if self._parse_error is not None:
                await self._write_error(self._parse_error.status)
                return None
            if self.core.shutting_down:
                return None

            partial = self.parser.has_partial
            self.state = READING if partial else IDLE
            timeout = config.read_timeout if partial else config.keepalive_timeout
            try:
                data = await asyncio.wait_for(self.reader.read(65536), timeout=timeout)
            except asyncio.TimeoutError:
                if partial:
                    logger.warning("Read timeout while receiving request from %s", self.client)
                    await self._write_error(408)
                return None
            except ConnectionError:
                return None

            if not data:
                if partial:
                    logger.warning("Connection from %s closed mid-request", self.client)
                return None

            try:
                self.parser.feed_data(data)
            except MalformedRequest as e:
                logger.warning("Malformed request from %s: %s", self.client, e)
                self._parse_error = e

    async def _handle(self, request: Request) -> bool:
        """Dispatch one request and write its response.

        Returns:
            True if the connection may serve another request
        """
        core = self.core
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        status = 500
        length = 0
        self.state = BUSY
        REQ_TOTAL.inc()
        REQ_IN_FLIGHT.inc()
        try:
            try:
                response, force_close = await core.dispatch(request, self)
            except asyncio.CancelledError:
                if core.shutting_down:
                    status = 503
                    await self._write_error(503, linger=False)
                raise
            self.state = WRITING
            keep_alive = (
                request.keep_alive
                and not force_close
                and not response.wants_close
                and not core.shutting_down
                and self.requests_handled + 1 < core.config.max_requests_per_connection
            )
            data, status = self._render(response, request, keep_alive)
            length = len(response.body) if status == response.status else 0
            try:
                self.writer.write(data)
                await self.writer.drain()
            except ConnectionError as e:
                logger.debug("Client %s went away before the response was written: %s", self.client, e)
                return False
            return keep_alive
        finally:
            duration = loop.time() - start_time
            REQ_IN_FLIGHT.dec()
            REQ_LATENCY.observe(duration)
            if status >= 500:
                REQ_ERRORS.inc()
            if core.config.access_log:
                log_access(request.method.value, request.path, status, length, duration,
                           self.client, request.request_id)

    def _render(self, response: Response, request: Request, keep_alive: bool) -> Tuple[bytes, int]:
        head = request.method is Method.HEAD
        try:
            return response.serialize(keep_alive, head=head), response.status
        except InvalidResponse as e:
            logger.error("Invalid response for %s %s: %s", request.method, request.path, e)
            return error_response(500).serialize(keep_alive, head=head), 500

    async def _write_error(self, status: int, linger: bool = True) -> None:
        await send_closing_error(self.reader, self.writer, status, self.client, linger=linger)

    def close_idle(self) -> None:
        """Close the transport if the connection waits for a new request."""
        if self.state == IDLE and not self.writer.is_closing():
            self.writer.close()

    async def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Error closing connection to %s: %s", self.client, e)


class ServerCore:
    """Asynchronous HTTP/1.1 server dispatching to a route table.

    Attributes:
        routes: Route table, read-only while serving
        config: Server settings
        registry: Parked requests awaiting completion
        port: Bound port once started
    """

    def __init__(self, routes: RouteTable, config: Optional[ServerConfig] = None):
        self.routes = routes
        self.config = config or ServerConfig()
        self.registry = PendingRegistry(default_timeout=self.config.pending_timeout)
        self.ip_filter = IPFilter(whitelist=self.config.allowed_clients)
        self.host = self.config.host
        self.port = self.config.port
        self.shutting_down = False
        self._server: Optional[asyncio.AbstractServer] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._connections: Set[Connection] = set()
        self._park_listeners: List[ParkCallback] = []

    @property
    def is_serving(self) -> bool:
        return self._server is not None and not self.shutting_down

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def add_park_listener(self, callback: ParkCallback) -> None:
        """Call callback(token, request) whenever a request is parked."""
        self._park_listeners.append(callback)

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> int:
        """Bind the listening socket and start the expiry sweeper.

        Args:
            host: Interface to bind, defaults to config.host
            port: Port to bind, defaults to config.port (0 = any free port)

        Returns:
            The bound port

        Raises:
            AlreadyRunning: If this core already listens
            BindFailure: If the address cannot be bound
        """
        if self._server is not None:
            raise AlreadyRunning("Server core is already running")

        host = self.host if host is None else host
        port = self.port if port is None else port
        self._loop = asyncio.get_running_loop()
        self.shutting_down = False

        try:
            self._server = await asyncio.start_server(
                self._handle_client, host, port, **get_server_kwargs(self.config.backlog)
            )
        except OSError as e:
            raise BindFailure(f"Cannot bind {host}:{port}: {e}") from e

        self._executor = ThreadPoolExecutor(thread_name_prefix="embedserver-worker")

        sock = self._server.sockets[0] if self._server.sockets else None
        if sock is not None:
            self.port = sock.getsockname()[1]
        self.host = host

        self._sweeper = self._loop.create_task(self._sweep())
        logger.info("Serving on http://%s:%s", self.host, self.port)
        return self.port

    async def _sweep(self) -> None:
        """Expire parked requests whose deadline passed, once per tick."""
        interval = self.config.sweep_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.registry.expire_stale()
            except Exception:
                logger.exception("Pending request sweep failed")

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        if self.shutting_down:
            writer.close()
            return

        configure_client_socket(writer)

        client = peer_address(writer)
        if not self.ip_filter.is_allowed(client):
            logger.warning("Rejected connection from %s", client)
            try:
                await send_closing_error(reader, writer, 403, client or "unknown")
            finally:
                writer.close()
            return

        conn = Connection(self, reader, writer)
        conn.task = asyncio.current_task()
        self._connections.add(conn)
        try:
            await conn.run()
        except Exception:
            logger.exception("Connection handler raised an unexpected exception")
        finally:
            self._connections.discard(conn)
            await conn.close()

    async def dispatch(self, request: Request, connection: Connection) -> Tuple[Response, bool]:
        """Resolve and invoke the handler for a request.

        Returns:
            The response to write and whether the connection must close
            afterwards
        """
        try:
            match = self.routes.resolve(request.method, request.path)
        except NoRoute as e:
            if e.allowed and self.config.method_not_allowed:
                return error_response(405, [('Allow', ', '.join(e.allowed))]), False
            return error_response(404), False

        route = match.route
        label = f"{route.method} {route.pattern}"
        request = request.with_path_params(match.params)

        try:
            result = await self._invoke(route.handler, request, label)
            if isinstance(result, Deferred):
                return await self._park(request, result, connection, label)
            if not isinstance(result, Response):
                raise HandlerFault(label, message=(
                    f"Handler for {label} returned {type(result).__name__}, "
                    f"expected Response or Deferred"
                ))
        except HandlerFault as fault:
            logger.error("%s", fault, exc_info=fault.cause or fault)
            return error_response(500), False
        return result, False

    async def _invoke(self, handler: Handler, request: Request, label: str):
        """Call a handler without blocking the event loop.

        Coroutine functions are awaited on the loop; plain functions run in
        the server's thread pool.
        """
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(request)
            else:
                result = await self._loop.run_in_executor(self._executor, handler, request)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            raise HandlerFault(label, e) from e
        return result

    async def _park(self, request: Request, deferred: Deferred, connection: Connection,
                    label: str) -> Tuple[Response, bool]:
        if self.shutting_down:
            return error_response(503), True

        waiter = ParkedConnection(self._loop, connection.client)
        token = self.registry.register(uuid.uuid4().hex, waiter,
                                       timeout=deferred.timeout, request=request)
        logger.debug("Parked %s %s as %s", request.method, request.path, token)
        connection.state = PARKED

        callbacks = list(self._park_listeners)
        if deferred.on_parked is not None:
            callbacks.insert(0, deferred.on_parked)
        if callbacks:
            # Park callbacks are application code and may block
            try:
                await self._loop.run_in_executor(
                    self._executor, _notify_parked, callbacks, token, request)
            except Exception as e:
                fault = HandlerFault(label, e)
                logger.error("%s", fault, exc_info=e)
                self.registry.complete(token, error_response(500))

        try:
            response = await waiter.wait()
        except ServerShutdown:
            return error_response(503), True
        return response, False

    def complete(self, token: str, status: int = 200, headers=None, body: bytes = b'') -> bool:
        """Resolve a parked request; safe to call from any thread.

        Returns:
            False when the token is unknown, already completed or expired
        """
        return self.complete_response(token, Response(status, headers or [], body))

    def complete_response(self, token: str, response: Response) -> bool:
        return self.registry.complete(token, response)

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """Stop accepting, resolve parked requests and close every connection.

        Args:
            grace: Seconds to wait for busy connections before cancelling
                them, defaults to config.shutdown_grace
        """
        if self._server is None:
            return
        grace = self.config.shutdown_grace if grace is None else grace

        logger.info("Initiating graceful shutdown...")
        self.shutting_down = True
        self._server.close()

        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        self.registry.fail_all()

        for conn in list(self._connections):
            conn.close_idle()

        tasks = [conn.task for conn in self._connections if conn.task is not None]
        if tasks:
            logger.info("Waiting for %d active connection(s) to complete...", len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.warning("Force closing %d connection(s) that didn't complete in time", len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.wait(pending)

        await self._server.wait_closed()
        self._server = None
        # Handler threads still running past the grace period are abandoned
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._executor = None
        logger.info("Server shutdown complete")
