"""
Log Stream Service - the operations exposed to the UI

Wires the tunnel manager, connection registry, log sessions, shell filter
and render feed together, and hands out per-session subscriptions for
log data, log errors, filter data and filter errors.
"""
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from KLOG.cluster.connections import ConnectionManager
from KLOG.config import Settings
from KLOG.filters.shell_filter import FilterResult, ShellFilter
from KLOG.models import ConnectionConfig, ConnectionSummary, LogStreamConfig, PodInfo
from KLOG.streaming.events import (
    FilterData,
    FilterError,
    LogData,
    LogError,
    SessionEventBus,
    SessionStateChanged,
    Subscription,
)
from KLOG.streaming.log_session import LogSessionManager
from KLOG.streaming.render_feed import FeedListener, FeedSubscription, RenderFeed
from KLOG.tunnel.ssh_tunnel import TunnelManager

logger = logging.getLogger(__name__)


class LogStreamService:
    """Facade over the log streaming engine"""

    def __init__(self, settings: Optional[Settings] = None,
                 connections: Optional[ConnectionManager] = None,
                 feed: Optional[RenderFeed] = None):
        self.settings = settings or Settings()
        self.event_bus = SessionEventBus()
        self.tunnels = connections.tunnels if connections else TunnelManager(self.settings.ssh_timeout)
        self.connections = connections or ConnectionManager(
            self.tunnels, tls_insecure=self.settings.tls_insecure
        )
        self.feed = feed or RenderFeed(self.settings.buffer_capacity, self.settings.frame_interval)
        self.shell_filter = ShellFilter(self.event_bus)
        self.sessions = LogSessionManager(
            self.connections.get_client, self.feed, self.shell_filter, self.event_bus
        )

        # Routes filter output into the feed while a filter runs
        self._filter_routes: Dict[str, Subscription] = {}
        self._routes_lock = threading.Lock()

    # Connections

    def add_connection(self, config: Union[ConnectionConfig, dict]) -> str:
        """Register a connection; re-adding an id first tears down the old one and its sessions"""
        if isinstance(config, dict):
            config = ConnectionConfig.model_validate(config)
        if config.id and self.connections.get(config.id) is not None:
            self.remove_connection(config.id)
        return self.connections.add(config)

    def test_connection(self, config: Union[ConnectionConfig, dict]) -> bool:
        if isinstance(config, dict):
            config = ConnectionConfig.model_validate(config)
        return self.connections.test(config)

    def remove_connection(self, connection_id: str) -> None:
        """Tear down the connection's sessions, then its client and tunnel"""
        for session_id in self.sessions.stop_connection(connection_id):
            self.remove_session(session_id)
        self.connections.remove(connection_id)

    def list_connections(self) -> List[ConnectionSummary]:
        return self.connections.list()

    def save_connections(self, path: Union[str, Path]) -> int:
        return self.connections.save(path)

    def load_connections(self, path: Union[str, Path]) -> int:
        configs = self.connections.read(path)
        for config in configs:
            self.add_connection(config)
        logger.info(f"Loaded {len(configs)} connections from {path}")
        return len(configs)

    def set_tls_insecure(self, insecure: bool) -> None:
        self.connections.set_tls_insecure(insecure)

    # Cluster accessors

    def list_namespaces(self, connection_id: str) -> List[str]:
        return self.connections.get_client(connection_id).list_namespaces()

    def list_pods(self, connection_id: str, namespace: str) -> List[PodInfo]:
        return self.connections.get_client(connection_id).list_pods(namespace)

    def list_containers(self, connection_id: str, namespace: str, pod_name: str) -> List[str]:
        return self.connections.get_client(connection_id).list_containers(namespace, pod_name)

    # Log streams

    def start_log_stream(self, config: Union[LogStreamConfig, dict]) -> None:
        """Start streaming; data and errors arrive through on_log_data / on_log_error"""
        if isinstance(config, dict):
            config = LogStreamConfig.model_validate(config)
        self.sessions.start(config)

    def stop_log_stream(self, session_id: str) -> None:
        self.sessions.stop(session_id)
        self._detach_filter(session_id)

    def remove_session(self, session_id: str) -> None:
        self._detach_filter(session_id)
        self.sessions.remove(session_id)

    def on_log_data(self, session_id: str, callback: Callable[[LogData], None]) -> Subscription:
        return self.event_bus.subscribe(session_id, callback, kinds=(LogData,))

    def on_log_error(self, session_id: str, callback: Callable[[LogError], None]) -> Subscription:
        return self.event_bus.subscribe(session_id, callback, kinds=(LogError,))

    def on_state_changed(self, session_id: str,
                         callback: Callable[[SessionStateChanged], None]) -> Subscription:
        return self.event_bus.subscribe(session_id, callback, kinds=(SessionStateChanged,))

    # Shell filter

    def start_shell_filter(self, session_id: str, command: str) -> FilterResult:
        """
        Start an external filter for the session

        While it runs the feed shows only its output. The session's buffered
        raw lines are written to it first so existing history is filtered too;
        live chunks wait until that history has been written.
        """
        self._detach_filter(session_id)
        with self.sessions.hold_delivery(session_id):
            result = self.shell_filter.start(session_id, command)
            if not result.success:
                return result

            route = self.event_bus.subscribe(
                session_id,
                lambda event: self.feed.push_filter_output(event.session_id, event.data),
                kinds=(FilterData,),
            )
            with self._routes_lock:
                self._filter_routes[session_id] = route
            self.feed.set_external_filter(session_id, True)

            self.feed.flush(session_id)
            history = self.feed.raw_lines(session_id)
            if history:
                self.shell_filter.write(session_id, "".join(line.raw + "\n" for line in history))
        return result

    def stop_shell_filter(self, session_id: str) -> None:
        self._detach_filter(session_id)

    def _detach_filter(self, session_id: str) -> None:
        self.shell_filter.stop(session_id)
        with self._routes_lock:
            route = self._filter_routes.pop(session_id, None)
        if route is not None:
            route.cancel()
            self.feed.set_external_filter(session_id, False)

    def write_to_filter(self, session_id: str, data: Union[bytes, str]) -> bool:
        return self.shell_filter.write(session_id, data)

    def on_filter_data(self, session_id: str, callback: Callable[[FilterData], None]) -> Subscription:
        return self.event_bus.subscribe(session_id, callback, kinds=(FilterData,))

    def on_filter_error(self, session_id: str, callback: Callable[[FilterError], None]) -> Subscription:
        return self.event_bus.subscribe(session_id, callback, kinds=(FilterError,))

    # Display feed

    def set_filter_expression(self, session_id: str, expression: str) -> List[str]:
        return self.feed.set_filter_expression(session_id, expression)

    def subscribe_feed(self, session_id: str) -> FeedSubscription:
        return self.feed.subscribe(session_id)

    def add_feed_listener(self, session_id: str, callback: FeedListener) -> Subscription:
        return self.feed.add_listener(session_id, callback)

    def clear_feed(self, session_id: str) -> None:
        self.feed.clear(session_id)

    # Lifecycle

    def shutdown(self) -> None:
        """Stop sessions, filters, the feed and every connection"""
        logger.info("Shutting down log stream service")
        self.sessions.stop_all()
        with self._routes_lock:
            routes = list(self._filter_routes.values())
            self._filter_routes.clear()
        for route in routes:
            route.cancel()
        self.shell_filter.stop_all()
        self.feed.close()
        self.connections.remove_all()
        self.tunnels.close_all()
