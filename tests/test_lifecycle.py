#!/usr/bin/env python3
"""
Lifecycle tests for the blocking EmbedHttpServer controller
"""
import queue
import socket
import threading
import time
import unittest

import requests

from embedserver import (
    AlreadyRunning, BindFailure, Deferred, EmbedHttpServer, Response, ServerConfig,
)


def ping(request):
    return Response.text('pong')


def deferred(request):
    return Deferred()


class TestEmbedHttpServer(unittest.TestCase):
    def setUp(self):
        """Set up a server with a ping and a deferred route"""
        self.server = EmbedHttpServer(ServerConfig(access_log=False, sweep_interval=0.05))
        self.server.register('GET', '/ping', ping)
        self.server.register('GET', '/deferred', deferred)
        self.parked = queue.Queue()
        self.server.add_park_listener(lambda token, request: self.parked.put(token))

    def tearDown(self):
        """Clean up test environment"""
        self.server.stop()

    def url(self, path):
        return f"http://127.0.0.1:{self.server.port}{path}"

    def test_start_and_stop(self):
        """Test the server serves between start() and stop()"""
        port = self.server.start()
        self.assertTrue(self.server.is_running)
        self.assertGreater(port, 0)
        self.assertEqual(self.server.port, port)

        resp = requests.get(self.url('/ping'), timeout=5)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.text, 'pong')

        self.server.stop()
        self.assertFalse(self.server.is_running)
        self.assertIsNone(self.server.port)
        with self.assertRaises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{port}/ping", timeout=5)

    def test_stop_when_not_running(self):
        """Test stop() on a stopped server does nothing"""
        self.server.stop()
        self.server.stop()
        self.assertFalse(self.server.is_running)

    def test_start_twice(self):
        """Test a second start() fails while running"""
        self.server.start()
        with self.assertRaises(AlreadyRunning):
            self.server.start()

    def test_register_while_running(self):
        """Test routes cannot change while serving"""
        self.server.start()
        with self.assertRaises(AlreadyRunning):
            self.server.register('GET', '/late', ping)

    def test_bind_failure(self):
        """Test starting on an occupied port"""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('127.0.0.1', 0))
            sock.listen(1)
            busy_port = sock.getsockname()[1]
            with self.assertRaises(BindFailure):
                self.server.start(busy_port)
            self.assertFalse(self.server.is_running)
        finally:
            sock.close()

    def test_restart(self):
        """Test start() after stop() serves again with fresh state"""
        self.server.start()
        self.server.stop()
        self.server.start()
        self.assertEqual(self.server.pending_count, 0)
        resp = requests.get(self.url('/ping'), timeout=5)
        self.assertEqual(resp.status_code, 200)

    def test_routes_passed_to_start_apply_to_that_run(self):
        """Test extra routes given to start() are dropped on restart"""
        self.server.start(routes=[('GET', '/extra', ping)])
        self.assertEqual(requests.get(self.url('/extra'), timeout=5).status_code, 200)
        self.server.stop()

        self.server.start()
        self.assertEqual(requests.get(self.url('/extra'), timeout=5).status_code, 404)

    def test_deferred_completed_from_another_thread(self):
        """Test a parked request answered by a completer thread"""
        self.server.start()
        results = {}

        def client():
            results['resp'] = requests.get(self.url('/deferred'), timeout=10)

        thread = threading.Thread(target=client)
        thread.start()

        token = self.parked.get(timeout=5)
        self.assertEqual(self.server.pending_count, 1)

        completer = threading.Thread(
            target=lambda: results.setdefault(
                'completed', self.server.complete(token, 200, [('Content-Type', 'text/plain')], b'signed')
            )
        )
        completer.start()
        completer.join()
        thread.join(timeout=10)

        self.assertTrue(results['completed'])
        self.assertEqual(results['resp'].status_code, 200)
        self.assertEqual(results['resp'].text, 'signed')
        self.assertEqual(self.server.pending_count, 0)
        self.assertFalse(self.server.complete(token, 200))

    def test_stop_answers_pending_requests(self):
        """Test stop() resolves parked requests with 503"""
        self.server.start()
        results = {}

        def client():
            results['resp'] = requests.get(self.url('/deferred'), timeout=10)

        thread = threading.Thread(target=client)
        thread.start()
        token = self.parked.get(timeout=5)

        self.server.stop()
        thread.join(timeout=10)

        self.assertEqual(results['resp'].status_code, 503)
        self.assertEqual(self.server.pending_count, 0)
        self.assertFalse(self.server.complete(token, 200))

    def test_stop_honours_shutdown_grace(self):
        """Test stop() answers a stuck handler with 503 after the grace period"""
        started = threading.Event()

        def stuck(request):
            started.set()
            time.sleep(3.0)
            return Response.text('too late')

        server = EmbedHttpServer(ServerConfig(shutdown_grace=0.2, access_log=False))
        server.register('GET', '/stuck', stuck)
        server.start()
        results = {}

        def client():
            results['resp'] = requests.get(f"http://127.0.0.1:{server.port}/stuck", timeout=10)

        thread = threading.Thread(target=client)
        thread.start()
        self.assertTrue(started.wait(timeout=5))

        begin = time.monotonic()
        server.stop()
        self.assertLess(time.monotonic() - begin, 1.5)
        thread.join(timeout=10)

        self.assertEqual(results['resp'].status_code, 503)
        self.assertFalse(server.is_running)

    def test_complete_when_not_running(self):
        """Test completion on a stopped server is ignored"""
        self.assertFalse(self.server.complete('0' * 32, 200))

    def test_builtin_routes(self):
        """Test /health and /metrics when enabled"""
        server = EmbedHttpServer(ServerConfig(builtin_routes=True, access_log=False))
        server.start()
        try:
            base = f"http://127.0.0.1:{server.port}"
            resp = requests.get(base + '/health', timeout=5)
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.text, 'OK')

            resp = requests.get(base + '/metrics', timeout=5)
            self.assertEqual(resp.status_code, 200)
            self.assertIn('embedserver_requests_total', resp.text)
        finally:
            server.stop()

    def test_context_manager(self):
        """Test the with-statement starts and stops the server"""
        with EmbedHttpServer(ServerConfig(access_log=False)) as server:
            self.assertTrue(server.is_running)
            resp = requests.get(f"http://127.0.0.1:{server.port}/missing", timeout=5)
            self.assertEqual(resp.status_code, 404)
        self.assertFalse(server.is_running)


if __name__ == "__main__":
    unittest.main()
