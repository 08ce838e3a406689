#!/usr/bin/env python3
"""
Unit tests for server configuration validation
"""
import unittest

from embedserver.core.config import ServerConfig


class TestServerConfig(unittest.TestCase):
    def test_defaults(self):
        """Test default configuration values"""
        config = ServerConfig()
        self.assertEqual(config.host, '127.0.0.1')
        self.assertEqual(config.port, 0)
        self.assertEqual(config.pending_timeout, 30.0)
        self.assertEqual(config.sweep_interval, 0.25)
        self.assertEqual(config.max_requests_per_connection, 1000)
        self.assertTrue(config.method_not_allowed)
        self.assertFalse(config.builtin_routes)
        self.assertEqual(config.allowed_clients, [])

    def test_allowed_clients_not_shared(self):
        """Test each config gets its own client list"""
        first = ServerConfig()
        first.allowed_clients.append('10.0.0.1')
        self.assertEqual(ServerConfig().allowed_clients, [])

    def test_invalid_configuration(self):
        """Test configuration rejected with a readable message"""
        # Test invalid port number (too high)
        with self.assertRaises(ValueError) as cm:
            ServerConfig(port=65536)
        self.assertIn("Port number must be between 0 and 65535", str(cm.exception))

        # Test invalid port number (negative)
        with self.assertRaises(ValueError) as cm:
            ServerConfig(port=-1)
        self.assertIn("Port number must be between 0 and 65535", str(cm.exception))

        # Test invalid port type
        with self.assertRaises(ValueError) as cm:
            ServerConfig(port="8000")
        self.assertIn("Port must be an integer", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            ServerConfig(pending_timeout=0)
        self.assertIn("pending_timeout must be positive", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            ServerConfig(sweep_interval=-0.1)
        self.assertIn("sweep_interval must be positive", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            ServerConfig(shutdown_grace=-1)
        self.assertIn("shutdown_grace must not be negative", str(cm.exception))

        with self.assertRaises(ValueError) as cm:
            ServerConfig(max_requests_per_connection=0)
        self.assertIn("max_requests_per_connection must be at least 1", str(cm.exception))

        # Test invalid backlog
        with self.assertRaises(ValueError) as cm:
            ServerConfig(backlog=0)
        self.assertIn("Backlog must be at least 1", str(cm.exception))

    def test_zero_grace_allowed(self):
        """Test a zero shutdown grace cancels busy connections immediately"""
        self.assertEqual(ServerConfig(shutdown_grace=0).shutdown_grace, 0)


if __name__ == "__main__":
    unittest.main()
