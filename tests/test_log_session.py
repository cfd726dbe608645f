import threading

import pytest
from unittest.mock import MagicMock

from KLOG.errors import ConnectionNotFound, TransportFailure
from KLOG.filters.shell_filter import ShellFilter
from KLOG.models import LogStreamConfig, SessionState
from KLOG.streaming.events import LogData, LogError, SessionEventBus, SessionStateChanged
from KLOG.streaming.log_session import LogSessionManager
from KLOG.streaming.render_feed import RenderFeed


class FakeStream:
    """Stands in for LogStreamHandle: yields canned chunks, optionally blocks like follow=True."""

    def __init__(self, chunks, cancel_event, block=False):
        self._chunks = chunks
        self.cancel_event = cancel_event
        self.block = block
        self.cancel_calls = 0

    def chunks(self):
        for chunk in self._chunks:
            if self.cancel_event.is_set():
                return
            yield chunk
        if self.block:
            self.cancel_event.wait(5)

    def cancel(self):
        self.cancel_calls += 1
        self.cancel_event.set()


class FakeClient:
    def __init__(self, chunks=(), block=False, error=None):
        self.chunks = list(chunks)
        self.block = block
        self.error = error
        self.streams = []
        self.calls = []

    def read_log_stream(self, namespace, pod_name, container_name, options, cancel_event):
        self.calls.append((namespace, pod_name, container_name, options))
        if self.error:
            raise self.error
        stream = FakeStream(self.chunks, cancel_event, self.block)
        self.streams.append(stream)
        return stream


def make_config(session_id="s1", connection_id="c1", **overrides):
    values = dict(
        session_id=session_id,
        connection_id=connection_id,
        namespace="default",
        pod_name="web-1",
        container_name="app",
    )
    values.update(overrides)
    return LogStreamConfig(**values)


@pytest.fixture
def feed():
    feed = RenderFeed(frame_interval=None)
    yield feed
    feed.close()


@pytest.fixture
def event_bus():
    return SessionEventBus()


@pytest.fixture
def shell_filter():
    """Fixture for a mock filter sandbox with no active filters."""
    mock = MagicMock(spec=ShellFilter)
    mock.is_active.return_value = False
    return mock


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def manager(client, feed, shell_filter, event_bus):
    clients = {"c1": client}

    def resolve(connection_id):
        if connection_id not in clients:
            raise ConnectionNotFound(connection_id)
        return clients[connection_id]

    manager = LogSessionManager(resolve, feed, shell_filter, event_bus)
    manager.clients = clients
    yield manager
    manager.stop_all()


def collect(event_bus, session_id="s1"):
    events = []
    event_bus.subscribe(session_id, events.append)
    return events


def wait_done(session):
    session.thread.join(timeout=5)
    assert not session.thread.is_alive()


def test_chunks_reach_feed_and_subscribers_in_order(manager, client, feed, event_bus):
    """
    Tests that chunks are delivered in receipt order with lines reassembled across chunks.
    """
    client.chunks = [b"one\ntw", b"o\nthree\n", b"four"]
    events = collect(event_bus)

    session = manager.start(make_config(follow=False))
    wait_done(session)
    feed.flush()

    assert [line.raw for line in feed.snapshot("s1")] == ["one", "two", "three", "four"]
    assert [e.data for e in events if isinstance(e, LogData)] == ["one\n", "two\nthree\n", "four"]


def test_stream_end_moves_to_stopped(manager, client, event_bus):
    client.chunks = [b"done\n"]
    events = collect(event_bus)

    session = manager.start(make_config(follow=False))
    wait_done(session)

    states = [e.state for e in events if isinstance(e, SessionStateChanged)]
    assert states == ["streaming", "stopped"]
    assert session.state is SessionState.STOPPED
    assert manager.is_streaming("s1") is False
    assert not [e for e in events if isinstance(e, LogError)]


def test_options_are_passed_to_the_client(manager, client):
    session = manager.start(make_config(follow=False, tail_lines=50))
    wait_done(session)

    namespace, pod_name, container_name, options = client.calls[0]
    assert (namespace, pod_name, container_name) == ("default", "web-1", "app")
    assert options.follow is False
    assert options.tail_lines == 50
    assert options.since_time is None


def test_chunks_are_written_to_active_filter(manager, client, shell_filter):
    client.chunks = [b"a\n", b"b\n"]
    shell_filter.is_active.return_value = True

    session = manager.start(make_config(follow=False))
    wait_done(session)

    shell_filter.write.assert_any_call("s1", "a\n")
    shell_filter.write.assert_any_call("s1", "b\n")
    assert shell_filter.write.call_count == 2


def test_stop_unknown_session_is_noop(manager, shell_filter):
    manager.stop("never-started")

    shell_filter.stop.assert_not_called()


def test_stop_aborts_stream_and_filter(manager, client, shell_filter, event_bus):
    client.block = True
    events = collect(event_bus)

    session = manager.start(make_config())
    assert manager.is_streaming("s1")

    manager.stop("s1")
    manager.stop("s1")

    wait_done(session)
    assert client.streams[0].cancel_event.is_set()
    assert manager.is_streaming("s1") is False
    shell_filter.stop.assert_called_with("s1")
    assert not [e for e in events if isinstance(e, LogError)]


def test_restart_stops_previous_stream(manager, client):
    client.block = True

    first = manager.start(make_config())
    second = manager.start(make_config(tail_lines=10))

    wait_done(first)
    assert first.cancel_event.is_set()
    assert second.is_streaming
    assert manager.get("s1") is second
    assert first.state is SessionState.STOPPED


def test_stream_error_is_session_scoped(manager, client, feed, event_bus):
    client.error = TransportFailure("connection reset by peer")
    events = collect(event_bus)
    other_events = collect(event_bus, "s2")

    session = manager.start(make_config())
    wait_done(session)
    feed.flush()

    assert [e.error for e in events if isinstance(e, LogError)] == ["connection reset by peer"]
    assert [line.raw for line in feed.snapshot("s1")] == ["[ERROR] connection reset by peer"]
    assert session.state is SessionState.STOPPED
    assert other_events == []


def test_unknown_connection_reports_error(manager, event_bus):
    events = collect(event_bus)

    session = manager.start(make_config(connection_id="missing"))
    wait_done(session)

    assert [e.error for e in events if isinstance(e, LogError)] == ["Connection not found: missing"]


def test_stop_connection_only_touches_its_sessions(manager, client):
    client.block = True
    manager.clients["c2"] = FakeClient(block=True)

    manager.start(make_config("s1", "c1"))
    manager.start(make_config("s2", "c1"))
    manager.start(make_config("s3", "c2"))

    stopped = manager.stop_connection("c1")

    assert sorted(stopped) == ["s1", "s2"]
    assert manager.is_streaming("s3")


def test_remove_drops_feed_and_subscriptions(manager, client, feed, event_bus):
    client.chunks = [b"x\n"]
    events = collect(event_bus)

    session = manager.start(make_config(follow=False))
    wait_done(session)
    manager.remove("s1")

    assert manager.get("s1") is None
    assert feed.raw_lines("s1") == []
    count = len(events)
    event_bus.publish(LogData(session_id="s1", data="late\n"))
    assert len(events) == count


def test_concurrent_start_stop_on_one_id_leaves_consistent_state(manager, client):
    client.block = True

    def churn():
        for _ in range(10):
            manager.start(make_config())
            manager.stop("s1")

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert manager.is_streaming("s1") is False
    assert all(stream.cancel_event.is_set() for stream in client.streams)
