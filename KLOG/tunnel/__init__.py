"""
SSH tunnels to cluster API servers
"""
