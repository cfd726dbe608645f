"""
Selector Package - choosing what to stream
"""

from .target_selector import LogTargetSelector, new_session_id, parse_tail_lines

__all__ = [
    'LogTargetSelector',
    'new_session_id',
    'parse_tail_lines',
]
