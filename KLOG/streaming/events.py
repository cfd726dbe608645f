"""
Session Event Channels - typed, cancellable per-session subscriptions

Each session id has its own list of subscribers, so tearing a session down
drops exactly its listeners and nobody filters a global broadcast by id.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEvent:
    session_id: str


@dataclass(frozen=True)
class LogData(SessionEvent):
    data: str


@dataclass(frozen=True)
class LogError(SessionEvent):
    error: str


@dataclass(frozen=True)
class FilterData(SessionEvent):
    data: str


@dataclass(frozen=True)
class FilterError(SessionEvent):
    error: str


@dataclass(frozen=True)
class SessionStateChanged(SessionEvent):
    state: str


class Subscription:
    """Handle returned by subscribe(); cancel() is idempotent"""

    def __init__(self, on_cancel: Callable[["Subscription"], None]):
        self._on_cancel = on_cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def _deactivate(self) -> bool:
        with self._lock:
            was_active = self._active
            self._active = False
        return was_active

    def cancel(self) -> None:
        if self._deactivate():
            self._on_cancel(self)


_Entry = Tuple[Subscription, Callable, Optional[Tuple[Type[SessionEvent], ...]]]


class SessionEventBus:
    """Delivers SessionEvents to the subscribers of their session id"""

    def __init__(self):
        self._subscribers: Dict[str, List[_Entry]] = {}
        self._lock = threading.Lock()

    def subscribe(self, session_id: str, callback: Callable[[SessionEvent], None],
                  kinds: Optional[Tuple[Type[SessionEvent], ...]] = None) -> Subscription:
        """
        Register a callback for one session's events

        Args:
            session_id: Session to listen to
            callback: Called with each event, on the publishing thread
            kinds: Optional event classes to restrict delivery to

        Returns:
            Subscription whose cancel() stops delivery
        """
        subscription = Subscription(lambda sub: self._remove(session_id, sub))
        with self._lock:
            self._subscribers.setdefault(session_id, []).append((subscription, callback, kinds))
        return subscription

    def _remove(self, session_id: str, subscription: Subscription) -> None:
        with self._lock:
            entries = self._subscribers.get(session_id)
            if not entries:
                return
            entries[:] = [entry for entry in entries if entry[0] is not subscription]
            if not entries:
                del self._subscribers[session_id]

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            entries = list(self._subscribers.get(event.session_id, ()))

        for subscription, callback, kinds in entries:
            if not subscription.active:
                continue
            if kinds and not isinstance(event, kinds):
                continue
            try:
                callback(event)
            except Exception:
                logger.error(f"Subscriber for session {event.session_id} failed", exc_info=True)

    def close_session(self, session_id: str) -> None:
        """Cancel every subscription of a session"""
        with self._lock:
            entries = self._subscribers.pop(session_id, [])
        for subscription, _, _ in entries:
            subscription._deactivate()
