"""
KLOG Terminal UI
"""

from .app import KLOGApp, run_app

__all__ = ['KLOGApp', 'run_app']
