"""
Log Viewer Components Module - session toolbar and status line

Handles:
- Grep-style pattern input
- External shell filter input with run / stop buttons
- Stream controls (stop, restart, clear)
- Session status display
"""
from textual.app import ComposeResult
from textual.containers import Horizontal
from textual.reactive import reactive
from textual.widgets import Button, Input, Label, Static

from KLOG.models import SessionState


class PatternFilterPanel(Horizontal):
    """In-process grep pipeline applied to the buffered lines"""

    def compose(self) -> ComposeResult:
        yield Label("[bold]Grep:[/bold]", classes="control-label")
        yield Input(
            placeholder='grep "ERROR" | grep -v "health"',
            id="grep-input"
        )
        yield Button("Clear", id="clear-grep-btn", variant="default")


class ShellFilterPanel(Horizontal):
    """External filter pipeline controls"""

    def compose(self) -> ComposeResult:
        yield Label("[bold]Shell filter:[/bold]", classes="control-label")
        yield Input(
            placeholder="jq -r .msg | grep -i timeout",
            id="shell-filter-input"
        )
        yield Button("Run", id="run-filter-btn", variant="primary")
        yield Button("Stop", id="stop-filter-btn", variant="warning", disabled=True)

    def set_running(self, running: bool) -> None:
        self.query_one("#run-filter-btn", Button).disabled = running
        self.query_one("#stop-filter-btn", Button).disabled = not running


class StreamControlPanel(Horizontal):
    """Stream lifecycle controls and status"""

    state: reactive[SessionState] = reactive(SessionState.IDLE)
    line_count: reactive[int] = reactive(0)

    def __init__(self, label: str, **kwargs):
        super().__init__(**kwargs)
        self.label = label

    def compose(self) -> ComposeResult:
        yield Static(self._status_text(), id="session-status")
        yield Button("Stop", id="stop-stream-btn", variant="error")
        yield Button("Restart", id="restart-stream-btn", variant="default")
        yield Button("Clear", id="clear-lines-btn", variant="default")
        yield Button("Bottom", id="jump-bottom-btn", variant="default")

    def _status_text(self) -> str:
        color = self.state.color
        return (f"[bold]{self.label}[/bold] "
                f"[{color}]{self.state.value}[/{color}] "
                f"| {self.line_count} lines")

    def watch_state(self, state: SessionState) -> None:
        self._refresh_status()
        if self.is_mounted:
            self.query_one("#stop-stream-btn", Button).disabled = state is not SessionState.STREAMING

    def watch_line_count(self, count: int) -> None:
        self._refresh_status()

    def _refresh_status(self) -> None:
        if self.is_mounted:
            self.query_one("#session-status", Static).update(self._status_text())
