import unittest
import socket
import time
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from devproxy.errors import UpstreamUnreachable
from devproxy.pool import ConnectionPool
from devproxy.rules import Target


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestConnectionPool(unittest.TestCase):
    """Test cases for upstream connection reuse."""

    def setUp(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(16)
        self.listener.settimeout(5)
        self.target = Target.parse(f"http://127.0.0.1:{self.listener.getsockname()[1]}")
        self.pool = ConnectionPool(connect_timeout=2, read_timeout=2, max_idle_per_origin=2)
        self._accepted = []

    def tearDown(self):
        self.pool.close()
        for sock in self._accepted:
            sock.close()
        self.listener.close()

    def accept(self) -> socket.socket:
        sock, _ = self.listener.accept()
        self._accepted.append(sock)
        return sock

    def test_released_connection_is_reused(self):
        # Arrange
        first = self.pool.acquire(self.target)
        self.accept()

        # Act
        self.pool.release(first)
        second = self.pool.acquire(self.target)

        # Assert
        self.assertIs(second, first)
        self.assertEqual(self.pool.idle_count(self.target), 0)

    def test_checked_out_connections_are_exclusive(self):
        first = self.pool.acquire(self.target)
        second = self.pool.acquire(self.target)
        self.assertIsNot(first, second)
        first.close()
        second.close()

    def test_dropped_connection_is_discarded(self):
        # Arrange
        connection = self.pool.acquire(self.target)
        server_side = self.accept()
        self.pool.release(connection)

        # Act
        server_side.close()
        deadline = time.monotonic() + 2
        while not connection.is_dropped() and time.monotonic() < deadline:
            time.sleep(0.01)
        replacement = self.pool.acquire(self.target)

        # Assert
        self.assertIsNot(replacement, connection)
        self.assertTrue(connection.closed)
        replacement.close()

    def test_idle_limit_per_origin(self):
        connections = [self.pool.acquire(self.target) for _ in range(3)]
        for connection in connections:
            self.pool.release(connection)
        self.assertEqual(self.pool.idle_count(self.target), 2)
        self.assertTrue(connections[2].closed)

    def test_expired_connections_are_not_reused(self):
        pool = ConnectionPool(max_idle_per_origin=2, idle_timeout=0)
        connection = pool.acquire(self.target)
        pool.release(connection)
        time.sleep(0.01)
        self.assertIsNot(pool.acquire(self.target), connection)
        self.assertTrue(connection.closed)
        pool.close()

    def test_closed_connection_is_not_pooled(self):
        connection = self.pool.acquire(self.target)
        connection.close()
        self.pool.release(connection)
        self.assertEqual(self.pool.idle_count(), 0)

    def test_close_empties_pool(self):
        connection = self.pool.acquire(self.target)
        self.pool.release(connection)
        self.pool.close()
        self.assertEqual(self.pool.idle_count(), 0)
        self.assertTrue(connection.closed)

        late = self.pool.acquire(self.target)
        self.pool.release(late)
        self.assertTrue(late.closed)

    def test_fresh_connection_when_reuse_disabled(self):
        connection = self.pool.acquire(self.target)
        self.pool.release(connection)
        fresh = self.pool.acquire(self.target, reuse=False)
        self.assertIsNot(fresh, connection)
        self.assertEqual(self.pool.idle_count(self.target), 1)
        fresh.close()

    def test_refused_connection(self):
        target = Target.parse(f"http://127.0.0.1:{_free_port()}")
        with self.assertRaises(UpstreamUnreachable):
            self.pool.acquire(target)


if __name__ == '__main__':
    unittest.main()
