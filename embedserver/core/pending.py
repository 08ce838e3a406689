"""
Registry of parked requests awaiting asynchronous completion.

A handler that cannot answer immediately returns a Deferred. The server
parks the connection under a fresh token and the controlling process later
calls complete(token, ...) from any thread. Each token completes at most
once: whichever of completion, expiry or shutdown removes the entry first
decides what is written, and later attempts are logged and ignored.
"""

"""
Copyright 2025 Chris Bunting
File: pending.py | Purpose: Pending-operation registry for deferred requests
@author Chris Bunting | @version 1.0.0

CHANGELOG:
2025-08-28 - Chris Bunting: Initial implementation
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import ServerShutdown, UnknownToken
from .models import Request, Response, error_response
from ..features.metrics import PENDING_EXPIRED, PENDING_OPERATIONS, PENDING_SHUTDOWN

logger = logging.getLogger("embedserver.pending")

# Callback invoked with (token, request) once a request is parked
ParkCallback = Callable[[str, Request], None]


class Deferred:
    """Returned by a handler to park its request instead of answering.

    Args:
        on_parked: Called with (token, request) after the request is
            registered; the token is what complete() expects later
        timeout: Seconds before the request expires with 504, overriding
            the server default
    """

    def __init__(self, on_parked: Optional[ParkCallback] = None, timeout: Optional[float] = None):
        if timeout is not None and timeout <= 0:
            raise ValueError("Deferred timeout must be positive")
        self.on_parked = on_parked
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"Deferred(timeout={self.timeout!r})"


class ParkedConnection:
    """The waiting side of a parked request.

    The connection task awaits wait(); resolve() and fail() may be called
    from any thread and hand the outcome over to the connection's loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, client: str = "unknown"):
        self.loop = loop
        self.client = client
        self.future: asyncio.Future = loop.create_future()

    def resolve(self, response: Response) -> None:
        self._deliver(lambda: self.future.set_result(response))

    def fail(self, error: BaseException) -> None:
        self._deliver(lambda: self.future.set_exception(error))

    def _deliver(self, setter: Callable[[], None]) -> None:
        def _set():
            if not self.future.done():
                setter()

        try:
            self.loop.call_soon_threadsafe(_set)
        except RuntimeError:
            logger.warning("Event loop closed, dropping outcome for %s", self.client)

    async def wait(self) -> Response:
        return await self.future


@dataclass
class PendingOperation:
    """State of one parked request.

    Attributes:
        identifier: Token under which the request is parked
        connection: Object receiving the outcome (resolve/fail)
        request: The parked request, when known
        created_at: Monotonic registration time
        deadline: Monotonic time after which the entry expires
    """
    identifier: str
    connection: ParkedConnection
    request: Optional[Request] = None
    created_at: float = 0.0
    deadline: float = field(default=float('inf'))


class PendingRegistry:
    """Thread-safe table of parked requests keyed by token.

    All mutations happen under one lock; outcomes are delivered to the
    connection after the entry has been removed, outside the lock.
    """

    def __init__(self, default_timeout: float = 30.0, clock: Callable[[], float] = time.monotonic):
        if default_timeout <= 0:
            raise ValueError("Pending timeout must be positive")
        self.default_timeout = default_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, PendingOperation] = {}

    def register(self, identifier: str, connection: ParkedConnection,
                 timeout: Optional[float] = None, request: Optional[Request] = None) -> str:
        """Park a connection under identifier and return its token.

        Raises:
            ValueError: If identifier is already live
        """
        now = self._clock()
        op = PendingOperation(
            identifier=identifier,
            connection=connection,
            request=request,
            created_at=now,
            deadline=now + (timeout if timeout is not None else self.default_timeout),
        )
        with self._lock:
            if identifier in self._entries:
                raise ValueError(f"Pending identifier already registered: {identifier}")
            self._entries[identifier] = op
        PENDING_OPERATIONS.inc()
        return identifier

    def _pop(self, token: str) -> PendingOperation:
        with self._lock:
            op = self._entries.pop(token, None)
        if op is None:
            raise UnknownToken(token)
        PENDING_OPERATIONS.dec()
        return op

    def complete(self, token: str, response: Response) -> bool:
        """Deliver response to the parked connection and drop the entry.

        Returns:
            False when the token is unknown, already completed or expired
        """
        try:
            op = self._pop(token)
        except UnknownToken as e:
            logger.warning("Ignoring completion: %s", e)
            return False
        op.connection.resolve(response)
        return True

    def expire(self, token: str) -> bool:
        """Answer a parked request with 504 and drop the entry."""
        try:
            op = self._pop(token)
        except UnknownToken:
            return False
        logger.info("Pending request %s expired after %.3fs", token, self._clock() - op.created_at)
        PENDING_EXPIRED.inc()
        op.connection.resolve(error_response(504))
        return True

    def expire_stale(self, now: Optional[float] = None) -> int:
        """Expire every entry whose deadline has passed."""
        if now is None:
            now = self._clock()
        with self._lock:
            stale = [token for token, op in self._entries.items() if op.deadline <= now]
        return sum(1 for token in stale if self.expire(token))

    def fail_all(self) -> int:
        """Fail every parked connection with ServerShutdown."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for op in entries:
            PENDING_OPERATIONS.dec()
            PENDING_SHUTDOWN.inc()
            op.connection.fail(ServerShutdown("Server is shutting down"))
        if entries:
            logger.info("Failed %d pending request(s) on shutdown", len(entries))
        return len(entries)

    def get(self, token: str) -> Optional[PendingOperation]:
        with self._lock:
            return self._entries.get(token)

    def tokens(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries
