"""
Log Viewer Package - live log session views

This package provides the per-session tab content:
- Batched table updates from the render feed with stick-to-bottom scrolling
- Grep-style pattern filtering
- External shell filter pipelines
- Stream stop / restart / clear controls

Package Structure:
- view: Session view orchestration (LogSessionView)
- components: Toolbar panels (PatternFilterPanel, ShellFilterPanel, StreamControlPanel)
- log_table: Log line table widget (LogStreamTable) and its row diffing
"""

from .view import LogSessionView
from .components import PatternFilterPanel, ShellFilterPanel, StreamControlPanel
from .log_table import LogStreamTable, TableUpdate, format_message, plan_update

__all__ = [
    # Main view
    'LogSessionView',

    # UI components
    'PatternFilterPanel',
    'ShellFilterPanel',
    'StreamControlPanel',
    'LogStreamTable',

    # Helpers
    'TableUpdate',
    'format_message',
    'plan_update',
]
