"""
Utility functions for embedded server configuration and operation.

This module provides:
- Logging setup, including structured JSON access logs
- Event loop creation with uvloop where the platform supports it
- Listening socket kwargs and per-connection socket tuning
"""

import sys
import socket
import asyncio
import logging
from typing import Dict, Any, Optional

from pythonjsonlogger.json import JsonFormatter

if sys.platform != "win32":
    import uvloop
else:
    uvloop = None

UVLOOP_AVAILABLE = uvloop is not None

logger = logging.getLogger("embedserver")
access_logger = logging.getLogger("embedserver.access")


def _reset_handlers(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()


def configure_logging(level=logging.INFO, log_file=None, json_format=False):
    """Configure logging for the embedded server.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional path to log file
        json_format: Emit every record as JSON instead of plain text

    Returns:
        Configured logger instance

    The access logger always emits JSON so request records stay
    machine-readable whatever the main format is. Calling it again replaces
    the handlers installed by the previous call.
    """
    logger.setLevel(level)
    _reset_handlers(logger)
    _reset_handlers(access_logger)

    if json_format:
        formatter = JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    access_handler = logging.StreamHandler()
    access_handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    access_logger.addHandler(access_handler)
    access_logger.propagate = False

    return logger


def log_access(method: str, path: str, status: int, length: int, duration: float,
               client: str, request_id: str) -> None:
    """Emit one structured access log record."""
    payload = {
        "method": method,
        "path": path,
        "status": status,
        "length": length,
        "duration_s": round(duration, 6),
        "client": client,
        "request_id": request_id,
    }
    access_logger.info("%s %s %d", method, path, status, extra=payload)


def new_event_loop(use_uvloop: bool = True) -> asyncio.AbstractEventLoop:
    """Create a fresh event loop, backed by uvloop when possible.

    Args:
        use_uvloop: Prefer uvloop; ignored on platforms without it
    """
    if use_uvloop and UVLOOP_AVAILABLE:
        logger.debug("Using uvloop event loop")
        return uvloop.new_event_loop()
    return asyncio.new_event_loop()


def get_server_kwargs(backlog: int = 128) -> Dict[str, Any]:
    """Get asyncio.start_server kwargs for the listening socket.

    SO_REUSEPORT is left off: a second server binding a busy port must fail
    instead of silently sharing it.
    """
    return {
        "reuse_address": True,
        "backlog": backlog,
        "start_serving": True,
    }


def configure_client_socket(writer: asyncio.StreamWriter) -> None:
    """Apply TCP_NODELAY and keep-alive to an accepted connection."""
    sock = writer.get_extra_info('socket')
    if sock is None:
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    except OSError as e:
        logger.debug(f"Failed to configure client socket: {e}")


def peer_address(writer: asyncio.StreamWriter) -> Optional[str]:
    """Return the client IP of a connection, if known."""
    peername = writer.get_extra_info('peername')
    return peername[0] if peername else None
