"""
Cluster access and the connection registry
"""
