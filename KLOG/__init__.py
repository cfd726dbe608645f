"""
KLOG - multiplexed Kubernetes log streaming over optional SSH tunnels
"""

__version__ = "0.1.0"
