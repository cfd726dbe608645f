"""
KLOG error taxonomy

Every failure is scoped to one session or connection id; none of these is
fatal to the process.
"""


class KLOGError(Exception):
    """Base class for all KLOG errors"""


class AuthFailure(KLOGError):
    """SSH handshake or cluster credential rejected"""


class TransportFailure(KLOGError):
    """Tunnel listener bind, SSH transport or log stream disconnect"""


class ValidationFailure(KLOGError):
    """Filter command rejected before any process was spawned"""


class ProcessFailure(KLOGError):
    """Filter process could not be spawned or exited abnormally"""


class ConnectionNotFound(KLOGError, KeyError):
    """No connection is registered under the given id"""

    def __init__(self, connection_id: str):
        super().__init__(f"Connection not found: {connection_id}")
        self.connection_id = connection_id

    def __str__(self) -> str:
        return self.args[0]
