"""
Render Feed Module - bounded, batched per-session display buffers

Handles:
- Splitting and classifying raw chunks into a pending queue
- Coalescing flushes to at most one per display frame
- Ring buffers with oldest-first eviction (50,000 lines by default)
- Grep-style pattern filtering, incremental on append and full on change
- Switching the display to external filter output while a filter runs
- Snapshot subscriptions and listener callbacks for the UI
- Stick-to-bottom scroll test for consumers
"""
import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, Iterator, List, Optional

from KLOG.config import DEFAULT_BUFFER_CAPACITY, DEFAULT_FRAME_INTERVAL
from KLOG.filters.pattern_pipeline import PatternStage, apply, parse_with_diagnostics
from KLOG.streaming.events import Subscription
from KLOG.streaming.line_parser import ParsedLogLine, error_line, parse_chunk

logger = logging.getLogger(__name__)

# Rows from the end that still count as "at the bottom"
BOTTOM_TOLERANCE = 3

FeedListener = Callable[[str, List[ParsedLogLine]], None]


def is_at_bottom(last_visible_index: int, line_count: int, tolerance: int = BOTTOM_TOLERANCE) -> bool:
    """
    Whether a consumer showing rows up to last_visible_index should keep auto-advancing

    Args:
        last_visible_index: Index of the last row on screen (0-based)
        line_count: Number of rows in the displayed sequence
        tolerance: How many rows short of the end still count as the bottom
    """
    if line_count == 0:
        return True
    return last_visible_index >= line_count - tolerance


class FilteredRing:
    """Ring buffer of lines plus the subset that passes the current stages"""

    def __init__(self, capacity: int):
        self.entries: Deque[ParsedLogLine] = deque(maxlen=capacity)
        self.visible: Deque[ParsedLogLine] = deque()

    def extend(self, lines: List[ParsedLogLine], stages: List[PatternStage]) -> None:
        for line in lines:
            self.entries.append(line)
            if apply(line.raw, stages):
                self.visible.append(line)

        # Drop visible lines whose source entry was evicted
        oldest = self.entries[0].seq if self.entries else None
        while self.visible and (oldest is None or self.visible[0].seq < oldest):
            self.visible.popleft()

    def refilter(self, stages: List[PatternStage]) -> None:
        self.visible = deque(line for line in self.entries if apply(line.raw, stages))

    def clear(self) -> None:
        self.entries.clear()
        self.visible.clear()


class SessionBuffer:
    """Display state of one session"""

    def __init__(self, capacity: int):
        self.raw = FilteredRing(capacity)
        self.filtered = FilteredRing(capacity)
        self.pending: List[ParsedLogLine] = []
        self.filter_pending: List[ParsedLogLine] = []
        self.expression = ""
        self.stages: List[PatternStage] = []
        self.external_filter = False
        self.version = 0
        self.next_seq = 1

    def stamp(self, lines: List[ParsedLogLine]) -> List[ParsedLogLine]:
        stamped = []
        for line in lines:
            stamped.append(replace(line, seq=self.next_seq))
            self.next_seq += 1
        return stamped

    def display(self) -> List[ParsedLogLine]:
        ring = self.filtered if self.external_filter else self.raw
        return list(ring.visible)


class RenderFeed:
    """
    Per-session display buffers fed from raw log chunks

    push() only queues work; a background flusher applies pending lines at
    most once per frame_interval. Pass frame_interval=None to flush manually.
    """

    def __init__(self, capacity: int = DEFAULT_BUFFER_CAPACITY,
                 frame_interval: Optional[float] = DEFAULT_FRAME_INTERVAL):
        self.capacity = capacity
        self.frame_interval = frame_interval

        self._sessions: Dict[str, SessionBuffer] = {}
        self._listeners: Dict[str, List[tuple]] = {}
        self._dirty = set()
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)

        # Flusher thread state
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._flusher: Optional[threading.Thread] = None

    # Input

    def _buffer(self, session_id: str) -> SessionBuffer:
        buffer = self._sessions.get(session_id)
        if buffer is None:
            buffer = self._sessions[session_id] = SessionBuffer(self.capacity)
        return buffer

    def push(self, session_id: str, chunk: str) -> None:
        """Queue a raw chunk of log text for the session"""
        lines = parse_chunk(chunk)
        if not lines:
            return
        with self._lock:
            self._buffer(session_id).pending.extend(lines)
            self._dirty.add(session_id)
        self._schedule()

    def push_error(self, session_id: str, message: str) -> None:
        with self._lock:
            self._buffer(session_id).pending.append(error_line(message))
            self._dirty.add(session_id)
        self._schedule()

    def push_filter_output(self, session_id: str, chunk: str) -> None:
        """Queue output of the session's external filter process"""
        lines = parse_chunk(chunk)
        if not lines:
            return
        with self._lock:
            buffer = self._sessions.get(session_id)
            if buffer is None or not buffer.external_filter:
                return
            buffer.filter_pending.extend(lines)
            self._dirty.add(session_id)
        self._schedule()

    # Flushing

    def _schedule(self) -> None:
        if self.frame_interval is None:
            return
        self._ensure_flusher()
        self._wake.set()

    def _ensure_flusher(self) -> None:
        if self._flusher is not None and self._flusher.is_alive():
            return
        with self._lock:
            if self._flusher is not None and self._flusher.is_alive():
                return
            self._stop_event.clear()
            self._flusher = threading.Thread(target=self._flush_loop, name="render-feed-flusher", daemon=True)
            self._flusher.start()

    def _flush_loop(self) -> None:
        """Main flusher loop - runs in background thread"""
        while not self._stop_event.is_set():
            self._wake.wait()
            if self._stop_event.is_set():
                break
            self._wake.clear()
            try:
                self.flush()
            except Exception:
                logger.error("Render feed flush failed", exc_info=True)
            # One flush per frame at most
            self._stop_event.wait(self.frame_interval)

    def flush(self, session_id: Optional[str] = None) -> bool:
        """
        Move pending lines into the ring buffers

        Args:
            session_id: Flush only this session (default: every dirty session)

        Returns:
            True if any session's display changed
        """
        updates = []
        with self._lock:
            if session_id is None:
                targets = list(self._dirty)
            else:
                targets = [session_id] if session_id in self._dirty else []

            for sid in targets:
                self._dirty.discard(sid)
                buffer = self._sessions.get(sid)
                if buffer is None:
                    continue
                if self._flush_buffer(buffer):
                    updates.append((sid, buffer.display()))

            if updates:
                self._changed.notify_all()

        for sid, lines in updates:
            self._notify(sid, lines)
        return bool(updates)

    def _flush_buffer(self, buffer: SessionBuffer) -> bool:
        changed = False
        if buffer.pending:
            buffer.raw.extend(buffer.stamp(buffer.pending), buffer.stages)
            buffer.pending = []
            changed = True
        if buffer.filter_pending:
            buffer.filtered.extend(buffer.stamp(buffer.filter_pending), buffer.stages)
            buffer.filter_pending = []
            changed = True
        if changed:
            buffer.version += 1
        return changed

    # Display control

    def set_filter_expression(self, session_id: str, expression: str) -> List[str]:
        """
        Replace the session's grep pipeline and re-filter the whole buffer

        Returns:
            Stage texts that were not understood and therefore ignored
        """
        stages, dropped = parse_with_diagnostics(expression)
        with self._lock:
            buffer = self._buffer(session_id)
            buffer.expression = expression
            buffer.stages = stages
            buffer.raw.refilter(stages)
            buffer.filtered.refilter(stages)
            buffer.version += 1
            lines = buffer.display()
            self._changed.notify_all()
        self._notify(session_id, lines)
        return dropped

    def get_filter_expression(self, session_id: str) -> str:
        with self._lock:
            buffer = self._sessions.get(session_id)
            return buffer.expression if buffer else ""

    def set_external_filter(self, session_id: str, active: bool) -> None:
        """Show filter-process output (active) or the raw buffer again (inactive)"""
        with self._lock:
            buffer = self._buffer(session_id)
            buffer.external_filter = active
            buffer.filtered.clear()
            buffer.filter_pending = []
            buffer.version += 1
            lines = buffer.display()
            self._changed.notify_all()
        self._notify(session_id, lines)

    def is_external_filter_active(self, session_id: str) -> bool:
        with self._lock:
            buffer = self._sessions.get(session_id)
            return bool(buffer and buffer.external_filter)

    def clear(self, session_id: str) -> None:
        """Empty the session's buffers; the session keeps its filter settings"""
        with self._lock:
            buffer = self._sessions.get(session_id)
            if buffer is None:
                return
            buffer.raw.clear()
            buffer.filtered.clear()
            buffer.pending = []
            buffer.filter_pending = []
            buffer.version += 1
            self._changed.notify_all()
        self._notify(session_id, [])

    def drop(self, session_id: str) -> None:
        """Forget the session entirely"""
        with self._lock:
            self._sessions.pop(session_id, None)
            self._listeners.pop(session_id, None)
            self._dirty.discard(session_id)
            self._changed.notify_all()

    # Output

    def snapshot(self, session_id: str) -> List[ParsedLogLine]:
        """Lines the consumer should currently display"""
        with self._lock:
            buffer = self._sessions.get(session_id)
            return buffer.display() if buffer else []

    def raw_lines(self, session_id: str) -> List[ParsedLogLine]:
        """Every buffered raw line, ignoring filters"""
        with self._lock:
            buffer = self._sessions.get(session_id)
            return list(buffer.raw.entries) if buffer else []

    def add_listener(self, session_id: str, callback: FeedListener) -> Subscription:
        """Call callback(session_id, lines) after every display change of the session"""
        subscription = Subscription(lambda sub: self._remove_listener(session_id, sub))
        with self._lock:
            self._buffer(session_id)
            self._listeners.setdefault(session_id, []).append((subscription, callback))
        return subscription

    def _remove_listener(self, session_id: str, subscription: Subscription) -> None:
        with self._lock:
            entries = self._listeners.get(session_id, [])
            entries[:] = [entry for entry in entries if entry[0] is not subscription]

    def _notify(self, session_id: str, lines: List[ParsedLogLine]) -> None:
        with self._lock:
            entries = list(self._listeners.get(session_id, ()))
        for subscription, callback in entries:
            if not subscription.active:
                continue
            try:
                callback(session_id, lines)
            except Exception:
                logger.error(f"Feed listener for session {session_id} failed", exc_info=True)

    def subscribe(self, session_id: str, poll_interval: float = 0.5) -> "FeedSubscription":
        with self._lock:
            self._buffer(session_id)
        return FeedSubscription(self, session_id, poll_interval)

    def _wait_for_change(self, session_id: str, seen: Optional[int], timeout: float,
                         cancelled: threading.Event):
        with self._changed:
            buffer = self._sessions.get(session_id)
            if buffer is not None and buffer.version == seen and not cancelled.is_set():
                self._changed.wait(timeout)
                buffer = self._sessions.get(session_id)
            if buffer is None:
                return None, []
            return buffer.version, buffer.display()

    def _wake_waiters(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def close(self) -> None:
        """Stop the flusher thread"""
        self._stop_event.set()
        self._wake.set()
        if self._flusher and self._flusher.is_alive():
            self._flusher.join(timeout=2.0)
        self._flusher = None


class FeedSubscription:
    """
    Lazy sequence of display snapshots for one session

    Iterating yields the current snapshot first, then a new snapshot after each
    change, until cancel() is called or the session is dropped. Iterating again
    restarts from the current snapshot.
    """

    def __init__(self, feed: RenderFeed, session_id: str, poll_interval: float = 0.5):
        self.feed = feed
        self.session_id = session_id
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()

    def __iter__(self) -> Iterator[List[ParsedLogLine]]:
        seen = None
        while not self._cancelled.is_set():
            version, lines = self.feed._wait_for_change(
                self.session_id, seen, self.poll_interval, self._cancelled
            )
            if version is None:
                return
            if version != seen and not self._cancelled.is_set():
                seen = version
                yield lines

    def cancel(self) -> None:
        self._cancelled.set()
        self.feed._wake_waiters()
