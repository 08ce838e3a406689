"""
Server configuration.

All tunables live on a single dataclass that is validated on construction,
so a bad value fails before any socket is opened.
"""

"""
Copyright 2025 Chris Bunting
File: config.py | Purpose: Embedded server configuration
@author Chris Bunting | @version 1.0.0

CHANGELOG:
2025-08-28 - Chris Bunting: Initial implementation
"""

from dataclasses import dataclass, field
from typing import List


@dataclass
class ServerConfig:
    """Embedded server settings.

    Attributes:
        host: Interface to bind, loopback by default
        port: Port to bind, 0 picks any free port
        pending_timeout: Seconds a parked request may wait for completion
        sweep_interval: Seconds between expiry sweeps of parked requests
        read_timeout: Seconds to receive the rest of a started request
        keepalive_timeout: Seconds an idle keep-alive connection stays open
        shutdown_grace: Seconds stop() waits for busy connections
        body_limit: Maximum request body size in bytes
        max_requests_per_connection: Keep-alive request cap per connection
        method_not_allowed: Answer 405 instead of 404 on method mismatch
        builtin_routes: Register /health and /metrics on start
        allowed_clients: IPs or CIDR ranges allowed to connect, empty allows all
        use_uvloop: Run the event loop on uvloop where supported
        backlog: Listen backlog
        access_log: Emit one structured log record per request
    """
    host: str = '127.0.0.1'
    port: int = 0
    pending_timeout: float = 30.0
    sweep_interval: float = 0.25
    read_timeout: float = 10.0
    keepalive_timeout: float = 5.0
    shutdown_grace: float = 5.0
    body_limit: int = 10 * 1024 * 1024
    max_requests_per_connection: int = 1000
    method_not_allowed: bool = True
    builtin_routes: bool = False
    allowed_clients: List[str] = field(default_factory=list)
    use_uvloop: bool = True
    backlog: int = 128
    access_log: bool = True

    def __post_init__(self):
        if not isinstance(self.port, int) or isinstance(self.port, bool):
            raise ValueError("Port must be an integer")
        if self.port < 0 or self.port > 65535:
            raise ValueError("Port number must be between 0 and 65535")

        for name in ('pending_timeout', 'sweep_interval', 'read_timeout',
                     'keepalive_timeout'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.shutdown_grace < 0:
            raise ValueError("shutdown_grace must not be negative")

        if self.body_limit < 0:
            raise ValueError("Body limit must not be negative")
        if self.max_requests_per_connection < 1:
            raise ValueError("max_requests_per_connection must be at least 1")
        if self.backlog < 1:
            raise ValueError("Backlog must be at least 1")
