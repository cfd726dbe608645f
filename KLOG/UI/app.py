"""
KLOG Main Application - multi-session Kubernetes log viewer using Textual
"""
import logging
from typing import Optional

from textual import on
from textual.app import App, ComposeResult
from textual.widgets import Footer, Header, TabbedContent, TabPane

from KLOG.config import Settings
from KLOG.models import LogStreamConfig, SessionState
from KLOG.service import LogStreamService
from KLOG.UI.views.log_viewer import LogSessionView
from KLOG.UI.views.selector import LogTargetSelector

logger = logging.getLogger(__name__)


def tab_title(config: LogStreamConfig, state: SessionState) -> str:
    return f"{config.pod_name}/{config.container_name} [{state.value}]"


class KLOGApp(App):
    """Kubernetes log streamer - Terminal UI Application"""

    TITLE = "KLOG - Kubernetes Log Streamer"
    CSS_PATH = "klog.tcss"

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "stop_session", "Stop Stream"),
        ("r", "restart_session", "Restart"),
        ("c", "clear_session", "Clear"),
        ("w", "close_session", "Close Tab"),
        ("ctrl+l", "reload_connections", "Reload Connections"),
        ("ctrl+s", "save_connections", "Save Connections"),
    ]

    def __init__(self, service: LogStreamService, settings: Optional[Settings] = None, **kwargs):
        super().__init__(**kwargs)
        self.service = service
        self.settings = settings or service.settings

    def compose(self) -> ComposeResult:
        """Compose the main UI layout"""
        yield Header(show_clock=True)
        yield LogTargetSelector(
            self.service,
            self.settings.default_tail_lines,
            id="target-selector"
        )
        yield TabbedContent(id="session-tabs")
        yield Footer()

    # Session tabs

    @on(LogTargetSelector.OpenRequested)
    async def handle_open_requested(self, message: LogTargetSelector.OpenRequested) -> None:
        config = message.config
        tabs = self.query_one("#session-tabs", TabbedContent)
        pane = TabPane(
            tab_title(config, SessionState.IDLE),
            LogSessionView(self.service, config, id=f"view-{config.session_id}"),
            id=f"tab-{config.session_id}",
        )
        await tabs.add_pane(pane)
        tabs.active = pane.id

    @on(LogSessionView.StateChanged)
    def handle_state_changed(self, message: LogSessionView.StateChanged) -> None:
        tabs = self.query_one("#session-tabs", TabbedContent)
        view = self.query_one(f"#view-{message.session_id}", LogSessionView)
        tabs.get_tab(f"tab-{message.session_id}").label = tab_title(view.config, message.state)

    def _active_view(self) -> Optional[LogSessionView]:
        pane = self.query_one("#session-tabs", TabbedContent).active_pane
        if pane is None:
            return None
        views = pane.query(LogSessionView)
        return views.first() if views else None

    def action_stop_session(self) -> None:
        view = self._active_view()
        if view:
            view.stop_stream()

    def action_restart_session(self) -> None:
        view = self._active_view()
        if view:
            view.start_stream()

    def action_clear_session(self) -> None:
        view = self._active_view()
        if view:
            self.service.clear_feed(view.session_id)

    async def action_close_session(self) -> None:
        """Close the active tab and release its session"""
        view = self._active_view()
        if view is None:
            return
        session_id = view.session_id
        await self.query_one("#session-tabs", TabbedContent).remove_pane(f"tab-{session_id}")
        self.service.remove_session(session_id)
        logger.info(f"Session {session_id} closed from UI")

    # Connections file

    def action_reload_connections(self) -> None:
        path = self.settings.connections_file
        if not path.exists():
            self.notify(f"No connections file at {path}", severity="warning")
            return
        try:
            count = self.service.load_connections(path)
        except Exception as e:
            logger.error(f"Loading connections from {path} failed", exc_info=True)
            self.notify(f"Error loading connections: {e}", severity="error")
            return
        self.query_one("#target-selector", LogTargetSelector).refresh_connections()
        self.notify(f"Loaded {count} connections", severity="information")

    def action_save_connections(self) -> None:
        path = self.settings.connections_file
        try:
            count = self.service.save_connections(path)
        except OSError as e:
            self.notify(f"Error saving connections: {e}", severity="error")
            return
        self.notify(f"Saved {count} connections to {path}", severity="information")


def run_app(service: LogStreamService, settings: Optional[Settings] = None) -> None:
    """Entry point to run the KLOG application"""
    app = KLOGApp(service, settings)
    app.run()
