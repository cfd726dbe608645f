"""
Target Selector Module - pick connection / namespace / pod / container

Handles:
- Cascading selects filled by background cluster queries
- Follow switch and tail-lines input
- Building the LogStreamConfig for a new session tab
"""
from typing import Dict, List, Optional
from uuid import uuid4

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal
from textual.message import Message
from textual.widgets import Button, Checkbox, Input, Select

from KLOG.errors import KLOGError
from KLOG.models import LogStreamConfig, PodInfo
from KLOG.service import LogStreamService


def new_session_id() -> str:
    return f"session-{uuid4().hex[:12]}"


def parse_tail_lines(value: str, default: int) -> Optional[int]:
    """Tail-lines input: blank means the default, 0 or less means everything"""
    value = value.strip()
    if not value:
        return default
    lines = int(value)
    return lines if lines > 0 else None


class LogTargetSelector(Horizontal):
    """Selector bar for opening a new log session"""

    class OpenRequested(Message):
        def __init__(self, config: LogStreamConfig):
            super().__init__()
            self.config = config

    def __init__(self, service: LogStreamService, default_tail_lines: int = 500, **kwargs):
        super().__init__(**kwargs)
        self.service = service
        self.default_tail_lines = default_tail_lines
        self.pods: Dict[str, PodInfo] = {}

    def compose(self) -> ComposeResult:
        yield Select([], prompt="Connection", id="connection-select")
        yield Select([], prompt="Namespace", id="namespace-select")
        yield Select([], prompt="Pod", id="pod-select")
        yield Select([], prompt="Container", id="container-select")
        yield Checkbox("Follow", value=True, id="follow-checkbox")
        yield Input(
            value=str(self.default_tail_lines),
            placeholder="Tail lines",
            type="integer",
            id="tail-input"
        )
        yield Button("Open", id="open-session-btn", variant="primary")

    def on_mount(self) -> None:
        self.refresh_connections()

    def refresh_connections(self) -> None:
        options = [
            (f"{c.name} (ssh)" if c.has_ssh else c.name, c.id)
            for c in self.service.list_connections()
        ]
        self.query_one("#connection-select", Select).set_options(options)
        self._reset("#namespace-select", "#pod-select", "#container-select")

    def _reset(self, *selectors: str) -> None:
        for selector in selectors:
            self.query_one(selector, Select).set_options([])

    def _set_options(self, selector: str, options: List[tuple]) -> None:
        self.query_one(selector, Select).set_options(options)

    def _value(self, selector: str) -> Optional[str]:
        value = self.query_one(selector, Select).value
        return None if value == Select.BLANK else value

    # Cascading selection

    @on(Select.Changed, "#connection-select")
    def handle_connection_changed(self, event: Select.Changed) -> None:
        self._reset("#namespace-select", "#pod-select", "#container-select")
        if event.value != Select.BLANK:
            self._load_namespaces(event.value)

    @on(Select.Changed, "#namespace-select")
    def handle_namespace_changed(self, event: Select.Changed) -> None:
        self._reset("#pod-select", "#container-select")
        connection_id = self._value("#connection-select")
        if connection_id and event.value != Select.BLANK:
            self._load_pods(connection_id, event.value)

    @on(Select.Changed, "#pod-select")
    def handle_pod_changed(self, event: Select.Changed) -> None:
        pod = self.pods.get(event.value) if event.value != Select.BLANK else None
        containers = pod.containers if pod else []
        self._set_options("#container-select", [(name, name) for name in containers])
        if len(containers) == 1:
            self.query_one("#container-select", Select).value = containers[0]

    @work(exclusive=True, thread=True, group="cluster-query")
    def _load_namespaces(self, connection_id: str) -> None:
        try:
            namespaces = self.service.list_namespaces(connection_id)
        except KLOGError as e:
            self.app.call_from_thread(self.notify, f"Error listing namespaces: {e}", severity="error")
            return
        self.app.call_from_thread(self._set_options, "#namespace-select", [(n, n) for n in namespaces])

    @work(exclusive=True, thread=True, group="cluster-query")
    def _load_pods(self, connection_id: str, namespace: str) -> None:
        try:
            pods = self.service.list_pods(connection_id, namespace)
        except KLOGError as e:
            self.app.call_from_thread(self.notify, f"Error listing pods: {e}", severity="error")
            return
        self.pods = {pod.name: pod for pod in pods}
        options = [(f"{pod.name} [{pod.status}]", pod.name) for pod in pods]
        self.app.call_from_thread(self._set_options, "#pod-select", options)

    # Opening a session

    @on(Button.Pressed, "#open-session-btn")
    def handle_open(self) -> None:
        connection_id = self._value("#connection-select")
        namespace = self._value("#namespace-select")
        pod_name = self._value("#pod-select")
        container_name = self._value("#container-select")
        if not all((connection_id, namespace, pod_name, container_name)):
            self.notify("Select a connection, namespace, pod and container first", severity="warning")
            return

        try:
            tail_lines = parse_tail_lines(self.query_one("#tail-input", Input).value, self.default_tail_lines)
        except ValueError:
            self.notify("Tail lines must be a number", severity="error")
            return

        config = LogStreamConfig(
            session_id=new_session_id(),
            connection_id=connection_id,
            namespace=namespace,
            pod_name=pod_name,
            container_name=container_name,
            follow=self.query_one("#follow-checkbox", Checkbox).value,
            tail_lines=tail_lines,
        )
        self.post_message(self.OpenRequested(config))
