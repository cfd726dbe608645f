"""
Log Session Module - one remote log stream per session id

Handles:
- Session state machine: idle -> streaming -> stopped
- Opening pod log streams through the connection's cluster client
- Background reader per session delivering chunks in receipt order
- Fan-out of each chunk to the render feed, the event bus and the shell filter
- Idempotent stop, bulk stop, per-connection stop
"""
import codecs
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from KLOG.cluster.kube_client import ClusterClient, LogStreamHandle
from KLOG.filters.shell_filter import ShellFilter
from KLOG.models import LogOptions, LogStreamConfig, LogTarget, SessionState
from KLOG.streaming.events import LogData, LogError, SessionEventBus, SessionStateChanged
from KLOG.streaming.render_feed import RenderFeed
from KLOG.util import KeyedLocks

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 2.0

ClientResolver = Callable[[str], ClusterClient]


@dataclass
class LogSession:
    """A session's stream registration and state"""
    session_id: str
    connection_id: str
    target: LogTarget
    options: LogOptions
    state: SessionState = SessionState.IDLE
    cancel_event: threading.Event = field(default_factory=threading.Event)
    handle: Optional[LogStreamHandle] = None
    thread: Optional[threading.Thread] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    @property
    def label(self) -> str:
        return f"{self.target.pod_name}/{self.target.container_name}"


class LogSessionManager:
    """
    Owns every session's remote stream

    Features:
    - At most one live remote stream per session id (restart stops the old one)
    - start/stop on the same id serialize; other ids are independent
    - Stream errors become LogError events for that session only
    """

    def __init__(self, resolve_client: ClientResolver, feed: RenderFeed,
                 shell_filter: ShellFilter, event_bus: SessionEventBus):
        self.resolve_client = resolve_client
        self.feed = feed
        self.shell_filter = shell_filter
        self.event_bus = event_bus

        self._sessions: Dict[str, LogSession] = {}
        self._lock = threading.Lock()
        self._id_locks = KeyedLocks()
        self._delivery_locks = KeyedLocks()

    def start(self, config: LogStreamConfig) -> LogSession:
        """
        Start (or restart) streaming for config.session_id

        Returns immediately; the stream is opened and read on a background thread.
        """
        session_id = config.session_id
        with self._id_locks.hold(session_id):
            self._stop_stream(session_id)

            session = LogSession(
                session_id=session_id,
                connection_id=config.connection_id,
                target=config.target,
                options=config.options,
                state=SessionState.STREAMING,
            )
            session.thread = threading.Thread(
                target=self._run,
                args=(session,),
                name=f"log-stream-{session_id}",
                daemon=True,
            )
            with self._lock:
                self._sessions[session_id] = session

            logger.info(f"Session {session_id}: streaming {config.namespace}/{session.label} "
                        f"on {config.connection_id} (follow={config.follow}, tail={config.tail_lines})")
            self._publish_state(session)
            session.thread.start()
            return session

    def _run(self, session: LogSession) -> None:
        """Open and read one stream - runs in background thread"""
        session_id = session.session_id
        try:
            client = self.resolve_client(session.connection_id)
            handle = client.read_log_stream(
                session.target.namespace,
                session.target.pod_name,
                session.target.container_name,
                session.options,
                session.cancel_event,
            )
            with session.lock:
                session.handle = handle
                cancelled = session.cancel_event.is_set()
            if cancelled:
                handle.cancel()
                return

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            pending = ""
            for chunk in handle.chunks():
                pending += decoder.decode(chunk)
                if '\n' in pending:
                    complete, pending = pending.rsplit('\n', 1)
                    self._deliver(session, complete + '\n')

            pending += decoder.decode(b"", final=True)
            if pending.strip():
                self._deliver(session, pending)

        except Exception as e:
            if not session.cancel_event.is_set():
                logger.warning(f"Session {session_id}: stream failed: {e}", exc_info=True)
                self._report_error(session_id, str(e))
        finally:
            self._mark_ended(session)

    def _deliver(self, session: LogSession, text: str) -> None:
        session_id = session.session_id
        with self._delivery_locks.hold(session_id):
            if session.cancel_event.is_set():
                return
            self.feed.push(session_id, text)
            self.event_bus.publish(LogData(session_id=session_id, data=text))
            if self.shell_filter.is_active(session_id):
                self.shell_filter.write(session_id, text)

    def hold_delivery(self, session_id: str):
        """Context manager that holds back the session's chunks until it exits"""
        return self._delivery_locks.hold(session_id)

    def _report_error(self, session_id: str, message: str) -> None:
        self.feed.push_error(session_id, message)
        self.event_bus.publish(LogError(session_id=session_id, error=message))

    def _mark_ended(self, session: LogSession) -> None:
        with self._lock:
            current = self._sessions.get(session.session_id) is session
            if current and session.state is SessionState.STREAMING:
                session.state = SessionState.STOPPED
            else:
                current = False
        if current:
            logger.info(f"Session {session.session_id}: stream ended")
            self._publish_state(session)

    def _publish_state(self, session: LogSession) -> None:
        self.event_bus.publish(SessionStateChanged(session_id=session.session_id, state=session.state.value))

    def _stop_stream(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return False

        with session.lock:
            session.cancel_event.set()
            handle = session.handle
            session.handle = None
        if handle is not None:
            handle.cancel()

        thread = session.thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=JOIN_TIMEOUT)

        with self._lock:
            was_streaming = session.state is SessionState.STREAMING
            session.state = SessionState.STOPPED
        if was_streaming:
            logger.info(f"Session {session_id}: stopped")
            self._publish_state(session)
        return True

    def stop(self, session_id: str) -> None:
        """Abort the session's stream and its shell filter; unknown ids are a no-op"""
        with self._id_locks.hold(session_id):
            if self._stop_stream(session_id):
                self.shell_filter.stop(session_id)

    def stop_all(self) -> None:
        for session_id in self.session_ids():
            self.stop(session_id)

    def stop_connection(self, connection_id: str) -> List[str]:
        """Stop every session of a connection; returns their ids"""
        with self._lock:
            session_ids = [s.session_id for s in self._sessions.values() if s.connection_id == connection_id]
        for session_id in session_ids:
            self.stop(session_id)
        return session_ids

    def remove(self, session_id: str) -> None:
        """Stop the session and release its buffer and subscriptions"""
        with self._id_locks.hold(session_id):
            self.stop(session_id)
            with self._lock:
                self._sessions.pop(session_id, None)
            self.feed.drop(session_id)
            self.event_bus.close_session(session_id)

    def get(self, session_id: str) -> Optional[LogSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def is_streaming(self, session_id: str) -> bool:
        session = self.get(session_id)
        return bool(session and session.is_streaming)
