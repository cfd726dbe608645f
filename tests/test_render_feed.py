import threading
import time

import pytest

from KLOG.streaming.render_feed import RenderFeed, is_at_bottom


@pytest.fixture
def feed():
    """Fixture for a feed flushed manually by the test."""
    feed = RenderFeed(capacity=5, frame_interval=None)
    yield feed
    feed.close()


def raw(lines):
    return [line.raw for line in lines]


def test_push_is_not_visible_until_flush(feed):
    feed.push("a", "one\ntwo\n")

    assert feed.snapshot("a") == []
    assert feed.flush() is True
    assert raw(feed.snapshot("a")) == ["one", "two"]
    assert feed.flush() is False


def test_blank_lines_are_dropped(feed):
    feed.push("a", "\n\none\n   \n")
    feed.flush()

    assert raw(feed.snapshot("a")) == ["one"]


def test_sessions_are_isolated(feed):
    feed.push("a", "alpha\n")
    feed.push("b", "beta\n")
    feed.flush("a")

    assert raw(feed.snapshot("a")) == ["alpha"]
    assert feed.snapshot("b") == []


def test_ring_buffer_evicts_oldest_first(feed):
    feed.push("a", "\n".join(f"line {i}" for i in range(8)))
    feed.flush()

    lines = feed.snapshot("a")
    assert raw(lines) == [f"line {i}" for i in range(3, 8)]
    assert [line.seq for line in lines] == sorted(line.seq for line in lines)
    assert len(feed.raw_lines("a")) == 5


def test_default_capacity():
    feed = RenderFeed(frame_interval=None)
    assert feed.capacity == 50_000


def test_filter_expression_reapplies_to_whole_buffer(feed):
    feed.push("a", "foo 1\nbar 2\nfoo 3\n")
    feed.flush()

    dropped = feed.set_filter_expression("a", 'grep "foo"')

    assert dropped == []
    assert raw(feed.snapshot("a")) == ["foo 1", "foo 3"]
    assert feed.get_filter_expression("a") == 'grep "foo"'


def test_filter_applies_incrementally_to_new_lines(feed):
    feed.set_filter_expression("a", 'grep -v "debug"')
    feed.push("a", "debug x\ninfo y\n")
    feed.flush()

    assert raw(feed.snapshot("a")) == ["info y"]


def test_filtered_view_follows_eviction(feed):
    feed.set_filter_expression("a", "grep keep")
    feed.push("a", "keep 0\n" + "drop\n" * 5 + "keep 1\n")
    feed.flush()

    assert raw(feed.snapshot("a")) == ["keep 1"]


def test_unrecognized_filter_stages_are_reported(feed):
    dropped = feed.set_filter_expression("a", "grep ok | sort")

    assert dropped == ["sort"]


def test_pattern_filter_end_to_end(feed):
    """
    Tests three pushed lines, a grep for the middle one, then clearing the filter.
    """
    feed.push("a", "first line\nsecond foo line\nthird line\n")
    feed.flush()

    feed.set_filter_expression("a", 'grep "foo"')
    assert raw(feed.snapshot("a")) == ["second foo line"]

    feed.set_filter_expression("a", "")
    assert raw(feed.snapshot("a")) == ["first line", "second foo line", "third line"]


def test_external_filter_output_replaces_display(feed):
    feed.push("a", "first line\nsecond foo line\nthird line\n")
    feed.flush()

    feed.set_external_filter("a", True)
    assert feed.snapshot("a") == []

    feed.push_filter_output("a", "second foo line\n")
    feed.push("a", "fourth line\n")
    feed.flush()
    assert raw(feed.snapshot("a")) == ["second foo line"]

    feed.set_external_filter("a", False)
    assert raw(feed.snapshot("a")) == ["first line", "second foo line", "third line", "fourth line"]


def test_filter_output_ignored_without_external_filter(feed):
    feed.push_filter_output("a", "stray\n")
    feed.flush()

    assert feed.snapshot("a") == []
    assert feed.is_external_filter_active("a") is False


def test_push_error_adds_error_line(feed):
    feed.push_error("a", "connection reset")
    feed.flush()

    lines = feed.snapshot("a")
    assert raw(lines) == ["[ERROR] connection reset"]
    assert lines[0].is_error


def test_clear_keeps_filter(feed):
    feed.set_filter_expression("a", "grep x")
    feed.push("a", "x1\n")
    feed.flush()

    feed.clear("a")

    assert feed.snapshot("a") == []
    assert feed.get_filter_expression("a") == "grep x"


def test_drop_forgets_session(feed):
    feed.push("a", "x\n")
    feed.flush()
    feed.drop("a")

    assert feed.snapshot("a") == []
    assert feed.raw_lines("a") == []


def test_listener_receives_each_change(feed, mocker):
    callback = mocker.MagicMock()
    subscription = feed.add_listener("a", callback)

    feed.push("a", "one\n")
    feed.flush()

    callback.assert_called_once()
    session_id, lines = callback.call_args[0]
    assert session_id == "a"
    assert raw(lines) == ["one"]

    subscription.cancel()
    feed.push("a", "two\n")
    feed.flush()
    callback.assert_called_once()


def test_subscription_yields_current_then_new_snapshots(feed):
    feed.push("a", "one\n")
    feed.flush()

    subscription = feed.subscribe("a", poll_interval=0.05)
    seen = []

    def consume():
        for snapshot in subscription:
            seen.append(raw(snapshot))
            if len(seen) == 2:
                break

    consumer = threading.Thread(target=consume, daemon=True)
    consumer.start()

    deadline = time.time() + 2
    while not seen and time.time() < deadline:
        time.sleep(0.01)
    feed.push("a", "two\n")
    feed.flush()
    consumer.join(timeout=2)

    assert seen == [["one"], ["one", "two"]]


def test_subscription_is_restartable(feed):
    feed.push("a", "one\n")
    feed.flush()
    subscription = feed.subscribe("a", poll_interval=0.05)

    assert raw(next(iter(subscription))) == ["one"]
    assert raw(next(iter(subscription))) == ["one"]


def test_cancelled_subscription_ends_iteration(feed):
    subscription = feed.subscribe("a", poll_interval=0.05)
    subscription.cancel()

    assert list(subscription) == []


def test_background_flusher_coalesces_pushes():
    feed = RenderFeed(capacity=100, frame_interval=0.01)
    try:
        for i in range(20):
            feed.push("a", f"line {i}\n")

        deadline = time.time() + 2
        while len(feed.snapshot("a")) < 20 and time.time() < deadline:
            time.sleep(0.01)

        assert raw(feed.snapshot("a")) == [f"line {i}" for i in range(20)]
    finally:
        feed.close()


@pytest.mark.parametrize("last_visible, count, expected", [
    (99, 100, True),
    (97, 100, True),
    (96, 100, False),
    (0, 0, True),
    (10, 100, False),
])
def test_is_at_bottom(last_visible, count, expected):
    assert is_at_bottom(last_visible, count) is expected
