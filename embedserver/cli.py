#!/usr/bin/env python3
"""
Demo entry point for the embedded HTTP server.

Serves a few example routes, including a deferred one completed from a
timer thread the way a host UI would complete it:

    embed-http --port 8080
    curl http://127.0.0.1:8080/ping
    curl http://127.0.0.1:8080/deferred/alice
"""

import argparse
import logging
import sys
import threading
import time

from .core.config import ServerConfig
from .core.errors import BindFailure
from .core.models import Response
from .core.pending import Deferred
from .core.server_utils import configure_logging
from .server import EmbedHttpServer


def build_server(config: ServerConfig, delay: float) -> EmbedHttpServer:
    server = EmbedHttpServer(config)

    @server.route('GET', '/ping')
    def ping(request):
        return Response.text('pong')

    @server.route('POST', '/echo')
    def echo(request):
        content_type = request.header('Content-Type', 'application/octet-stream')
        return Response(200, [('Content-Type', content_type)], request.body)

    def answer_later(token, request):
        name = request.path_params['name']
        timer = threading.Timer(delay, server.complete,
                                args=(token, 200, [('Content-Type', 'text/plain')], f'hello {name}'))
        timer.daemon = True
        timer.start()

    @server.route('GET', '/deferred/{name}')
    def deferred(request):
        return Deferred(on_parked=answer_later)

    return server


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Embedded HTTP server demo")
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind')
    parser.add_argument('--port', type=int, default=8080, help='Port to bind')
    parser.add_argument('--pending-timeout', type=float, default=30.0,
                        help='Seconds a deferred request may wait')
    parser.add_argument('--delay', type=float, default=1.0,
                        help='Seconds before the demo completes deferred requests')
    parser.add_argument('--json-logs', action='store_true', help='Emit JSON log records')
    parser.add_argument('--no-uvloop', action='store_true', help='Use the default asyncio loop')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.debug else logging.INFO, json_format=args.json_logs)

    try:
        config = ServerConfig(
            host=args.host,
            port=args.port,
            pending_timeout=args.pending_timeout,
            builtin_routes=True,
            use_uvloop=not args.no_uvloop,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    server = build_server(config, args.delay)
    try:
        port = server.start()
    except BindFailure as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        return 1

    print(f"Embedded server listening on http://{args.host}:{port}")
    try:
        while server.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        server.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
