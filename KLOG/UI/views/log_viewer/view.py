"""
Log Session View Module - one tab's worth of UI for a log session

Handles:
- Starting / stopping / restarting the session's stream
- Feeding render-feed snapshots into the table
- Grep expression and external shell filter controls
- Surfacing stream and filter errors as notifications
"""
from typing import List, Optional

from textual import on
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.message import Message
from textual.timer import Timer
from textual.widgets import Button, Input

from KLOG.errors import KLOGError
from KLOG.models import LogStreamConfig, SessionState
from KLOG.service import LogStreamService
from KLOG.streaming.events import FilterError, LogError, SessionEvent, SessionStateChanged, Subscription
from KLOG.streaming.line_parser import ParsedLogLine

from .components import PatternFilterPanel, ShellFilterPanel, StreamControlPanel
from .log_table import LogStreamTable


class LogSessionView(Vertical):
    """
    Live view of one pod container's log stream

    Features:
    - Batched table updates driven by the render feed
    - Debounced grep pipeline filtering
    - External filter pipelines (grep, awk, sed, jq, ...)
    - Session status in the control bar and the owning tab
    """

    class FeedUpdated(Message):
        """New display snapshot from the render feed"""

        def __init__(self, lines: List[ParsedLogLine]):
            super().__init__()
            self.lines = lines

    class StreamEvent(Message):
        """Session event relayed from a background thread"""

        def __init__(self, event: SessionEvent):
            super().__init__()
            self.event = event

    class StateChanged(Message):
        """Posted for the app so it can update the tab title"""

        def __init__(self, session_id: str, state: SessionState):
            super().__init__()
            self.session_id = session_id
            self.state = state

    def __init__(self, service: LogStreamService, config: LogStreamConfig, **kwargs):
        super().__init__(**kwargs)
        self.service = service
        self.config = config
        self.session_id = config.session_id
        self.label = f"{config.namespace}/{config.pod_name}/{config.container_name}"

        self._subscriptions: List[Subscription] = []
        self._grep_timer: Optional[Timer] = None

    def compose(self) -> ComposeResult:
        yield StreamControlPanel(self.label, id="stream-control-panel")
        yield PatternFilterPanel(id="pattern-filter-panel")
        yield ShellFilterPanel(id="shell-filter-panel")
        yield LogStreamTable(id="log-stream-table")

    def on_mount(self) -> None:
        # Callbacks run on worker threads; post_message hands them to the UI thread
        self._subscriptions = [
            self.service.add_feed_listener(
                self.session_id, lambda _sid, lines: self.post_message(self.FeedUpdated(lines))
            ),
            self.service.on_state_changed(self.session_id, self._relay),
            self.service.on_log_error(self.session_id, self._relay),
            self.service.on_filter_error(self.session_id, self._relay),
        ]
        self.start_stream()

    def on_unmount(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    def _relay(self, event: SessionEvent) -> None:
        self.post_message(self.StreamEvent(event))

    def start_stream(self) -> None:
        try:
            self.service.start_log_stream(self.config)
        except KLOGError as e:
            self.notify(f"Could not start {self.label}: {e}", severity="error")

    def stop_stream(self) -> None:
        self.service.stop_log_stream(self.session_id)
        self.query_one("#shell-filter-panel", ShellFilterPanel).set_running(False)

    # Feed and session events

    @on(FeedUpdated)
    def handle_feed_updated(self, message: FeedUpdated) -> None:
        table = self.query_one("#log-stream-table", LogStreamTable)
        table.show_lines(message.lines)
        self.query_one("#stream-control-panel", StreamControlPanel).line_count = len(message.lines)

    @on(StreamEvent)
    def handle_stream_event(self, message: StreamEvent) -> None:
        event = message.event
        if isinstance(event, SessionStateChanged):
            state = SessionState(event.state)
            self.query_one("#stream-control-panel", StreamControlPanel).state = state
            self.post_message(self.StateChanged(self.session_id, state))
        elif isinstance(event, LogError):
            self.notify(f"{self.label}: {event.error}", severity="error")
        elif isinstance(event, FilterError):
            self.notify(event.error.strip(), severity="warning")

    # Controls

    @on(Button.Pressed, "#stop-stream-btn")
    def handle_stop(self) -> None:
        self.stop_stream()

    @on(Button.Pressed, "#restart-stream-btn")
    def handle_restart(self) -> None:
        self.start_stream()

    @on(Button.Pressed, "#clear-lines-btn")
    def handle_clear(self) -> None:
        self.service.clear_feed(self.session_id)

    @on(Button.Pressed, "#jump-bottom-btn")
    def handle_jump_bottom(self) -> None:
        self.query_one("#log-stream-table", LogStreamTable).jump_to_bottom()

    @on(Input.Changed, "#grep-input")
    def handle_grep_changed(self, event: Input.Changed) -> None:
        """Debounce - apply 300ms after the last keystroke"""
        if self._grep_timer:
            self._grep_timer.stop()
        expression = event.value
        self._grep_timer = self.set_timer(0.3, lambda: self._apply_grep(expression))

    def _apply_grep(self, expression: str) -> None:
        self._grep_timer = None
        dropped = self.service.set_filter_expression(self.session_id, expression)
        if dropped:
            self.notify(f"Ignored filter stages: {', '.join(dropped)}", severity="warning")

    @on(Button.Pressed, "#clear-grep-btn")
    def handle_clear_grep(self) -> None:
        self.query_one("#grep-input", Input).value = ""

    @on(Button.Pressed, "#run-filter-btn")
    @on(Input.Submitted, "#shell-filter-input")
    def handle_run_filter(self) -> None:
        command = self.query_one("#shell-filter-input", Input).value.strip()
        result = self.service.start_shell_filter(self.session_id, command)
        if not result.success:
            self.notify(f"Filter rejected: {result.error}", severity="error")
            return
        self.query_one("#shell-filter-panel", ShellFilterPanel).set_running(True)
        self.notify(f"Filter running: {command}", severity="information")

    @on(Button.Pressed, "#stop-filter-btn")
    def handle_stop_filter(self) -> None:
        self.service.stop_shell_filter(self.session_id)
        self.query_one("#shell-filter-panel", ShellFilterPanel).set_running(False)
