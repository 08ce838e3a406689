"""
Pending-operation registry tests.
"""

import asyncio
import threading

import pytest

from embedserver.core.errors import ServerShutdown
from embedserver.core.models import Response
from embedserver.core.pending import Deferred, ParkedConnection, PendingRegistry


class RecordingConnection:
    def __init__(self):
        self.responses = []
        self.errors = []

    def resolve(self, response):
        self.responses.append(response)

    def fail(self, error):
        self.errors.append(error)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return PendingRegistry(default_timeout=5.0, clock=clock)


def test_register_returns_token(registry):
    conn = RecordingConnection()
    token = registry.register('abc', conn)
    assert token == 'abc'
    assert 'abc' in registry
    assert len(registry) == 1
    op = registry.get('abc')
    assert op.created_at == 100.0
    assert op.deadline == 105.0


def test_duplicate_identifier_rejected(registry):
    registry.register('abc', RecordingConnection())
    with pytest.raises(ValueError):
        registry.register('abc', RecordingConnection())
    assert len(registry) == 1


def test_complete_delivers_exactly_once(registry):
    conn = RecordingConnection()
    token = registry.register('t1', conn)
    response = Response(201, [('X-Done', '1')], b'done')

    assert registry.complete(token, response) is True
    assert registry.complete(token, Response(500)) is False

    assert conn.responses == [response]
    assert len(registry) == 0


def test_unknown_token_is_logged_and_ignored(registry, caplog):
    with caplog.at_level('WARNING', logger='embedserver.pending'):
        assert registry.complete('nope', Response(200)) is False
    assert 'nope' in caplog.text


def test_expire_writes_gateway_timeout(registry):
    conn = RecordingConnection()
    token = registry.register('t1', conn)
    assert registry.expire(token) is True
    assert registry.expire(token) is False
    assert registry.complete(token, Response(200)) is False
    assert [r.status for r in conn.responses] == [504]


def test_expire_stale_only_removes_overdue_entries(registry, clock):
    short, default = RecordingConnection(), RecordingConnection()
    registry.register('short', short, timeout=1.0)
    registry.register('default', default)

    clock.now += 1.0
    assert registry.expire_stale() == 1
    assert registry.tokens() == ['default']
    assert [r.status for r in short.responses] == [504]

    clock.now += 4.0
    assert registry.expire_stale() == 1
    assert len(registry) == 0


def test_registry_stays_bounded_without_completions(registry, clock):
    for i in range(1000):
        registry.register(f'op-{i}', RecordingConnection())
        clock.now += 0.01
        registry.expire_stale()
    # every entry older than the timeout is gone
    assert len(registry) <= 501


def test_fail_all(registry):
    conns = [RecordingConnection() for _ in range(3)]
    for i, conn in enumerate(conns):
        registry.register(f'op-{i}', conn)
    assert registry.fail_all() == 3
    assert len(registry) == 0
    for conn in conns:
        assert len(conn.errors) == 1
        assert isinstance(conn.errors[0], ServerShutdown)
    assert registry.complete('op-0', Response(200)) is False


def test_concurrent_completions_deliver_once(registry):
    conn = RecordingConnection()
    token = registry.register('race', conn)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(registry.complete(token, Response(200)))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(conn.responses) == 1


def test_invalid_timeouts():
    with pytest.raises(ValueError):
        PendingRegistry(default_timeout=0)
    with pytest.raises(ValueError):
        Deferred(timeout=-1)


@pytest.mark.asyncio
async def test_parked_connection_resolved_from_another_thread():
    loop = asyncio.get_running_loop()
    registry = PendingRegistry(default_timeout=5.0)
    waiter = ParkedConnection(loop, 'test-client')
    token = registry.register('threaded', waiter)

    thread = threading.Thread(target=registry.complete, args=(token, Response(200, [], b'ok')))
    thread.start()
    response = await asyncio.wait_for(waiter.wait(), timeout=2.0)
    thread.join()

    assert response.body == b'ok'


@pytest.mark.asyncio
async def test_parked_connection_failed_on_shutdown():
    loop = asyncio.get_running_loop()
    registry = PendingRegistry(default_timeout=5.0)
    waiter = ParkedConnection(loop)
    registry.register('op', waiter)
    registry.fail_all()

    with pytest.raises(ServerShutdown):
        await asyncio.wait_for(waiter.wait(), timeout=2.0)
