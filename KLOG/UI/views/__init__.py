"""
KLOG UI Views Package
"""

from .log_viewer import LogSessionView
from .selector import LogTargetSelector

__all__ = [
    'LogSessionView',
    'LogTargetSelector',
]
