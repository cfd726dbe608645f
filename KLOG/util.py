import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

import yaml

DEFAULT_API_PORT = 6443


def extract_api_server(kubeconfig: str) -> Optional[Tuple[str, int]]:
    """
    Return (host, port) of the first cluster's server URL, or None.

    Reads the same clusters[0].cluster.server entry that gets pointed at a
    local tunnel, so quoted values and IPv6 hosts resolve the same way.
    """
    try:
        config = yaml.safe_load(kubeconfig)
    except yaml.YAMLError:
        return None
    if not isinstance(config, dict):
        return None

    clusters = config.get("clusters") or []
    if not isinstance(clusters, list) or not clusters or not isinstance(clusters[0], dict):
        return None
    server = (clusters[0].get("cluster") or {}).get("server")
    if not isinstance(server, str) or not server.strip():
        return None

    parts = urlsplit(server.strip())
    try:
        port = parts.port
    except ValueError:
        return None
    if not parts.hostname:
        return None
    return parts.hostname, port or DEFAULT_API_PORT


class KeyedLocks:
    """
    One lock per id, so operations on the same id run one at a time while
    different ids proceed independently. An id's lock is dropped once
    nobody holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: Dict[str, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]
