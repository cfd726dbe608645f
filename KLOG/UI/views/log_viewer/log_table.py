"""
Log Stream Table Module - DataTable for a session's live log lines

Handles:
- Incremental row updates keyed by line sequence number
- Timestamp column and rich-styled payload (errors in red, links underlined)
- Stick-to-bottom scrolling while the user is at the end
"""
from dataclasses import dataclass, field
from typing import List

from rich.style import Style
from rich.text import Text
from textual.widgets import DataTable

from KLOG.streaming.line_parser import ParsedLogLine
from KLOG.streaming.render_feed import is_at_bottom


@dataclass
class TableUpdate:
    """Row changes needed to go from the shown rows to a new snapshot"""
    reset: bool = False
    remove: int = 0
    append: List[ParsedLogLine] = field(default_factory=list)


def plan_update(shown: List[int], snapshot: List[ParsedLogLine]) -> TableUpdate:
    """
    Diff the shown row sequence numbers against a feed snapshot

    Args:
        shown: seq of every row currently in the table, oldest first
        snapshot: Lines the feed wants displayed, oldest first

    Returns:
        TableUpdate; reset means redraw everything from the snapshot
    """
    if not snapshot:
        return TableUpdate(reset=bool(shown))

    first = snapshot[0].seq
    remove = 0
    while remove < len(shown) and shown[remove] < first:
        remove += 1

    kept = shown[remove:]
    if len(kept) > len(snapshot) or [line.seq for line in snapshot[:len(kept)]] != kept:
        return TableUpdate(reset=True, append=list(snapshot))
    return TableUpdate(remove=remove, append=list(snapshot[len(kept):]))


def format_message(line: ParsedLogLine, max_length: int) -> Text:
    """Payload as rich Text; long lines are truncated"""
    text = Text(style="red" if line.is_error else "")
    remaining = max_length
    truncated = False
    for segment in line.segments():
        part = segment.text[:remaining]
        remaining -= len(part)
        truncated = len(part) < len(segment.text)
        if segment.is_link:
            text.append(part, style=Style(color="blue", underline=True, link=segment.text))
        else:
            text.append(part)
        if truncated:
            text.append("...", style="dim")
            break
    return text


class LogStreamTable(DataTable):
    """
    DataTable for streaming log lines

    Features:
    - Rows keyed by the feed's line sequence number
    - Oldest rows dropped as the feed evicts them
    - Follows the tail only while the view is at the bottom
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.shown: List[int] = []
        self.max_message_length = 500

    def on_mount(self) -> None:
        self.cursor_type = "row"
        self.zebra_stripes = True
        self.add_column("Time", key="time")
        self.add_column("Message", key="message")

    def _last_visible_row(self) -> int:
        # One line per row, minus the header
        return int(self.scroll_y) + max(self.size.height - 2, 0)

    def show_lines(self, snapshot: List[ParsedLogLine]) -> None:
        """
        Bring the table in line with a feed snapshot

        Args:
            snapshot: Lines to display, oldest first
        """
        follow = is_at_bottom(self._last_visible_row(), self.row_count)
        update = plan_update(self.shown, snapshot)

        if update.reset:
            self.clear()
            self.shown = []
        else:
            for seq in self.shown[:update.remove]:
                self.remove_row(str(seq))
            del self.shown[:update.remove]

        for line in update.append:
            self.add_row(*self._format_line(line), key=str(line.seq))
            self.shown.append(line.seq)

        if follow and update.append:
            self.scroll_end(animate=False)

    def _format_line(self, line: ParsedLogLine) -> tuple:
        timestamp = Text(line.timestamp, style="cyan") if line.timestamp else Text("-", style="dim")
        return (timestamp, format_message(line, self.max_message_length))

    def jump_to_bottom(self) -> None:
        if self.row_count > 0:
            last_row = self.row_count - 1
            self.cursor_coordinate = (last_row, 0)
            self.scroll_to_row(last_row)
