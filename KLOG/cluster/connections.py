"""
Connection Registry Module - cluster connections and their tunnels

Handles:
- Adding connections (SSH tunnel first when configured, then the cluster client)
- Testing connection definitions without keeping anything open
- Removing connections (client and tunnel teardown)
- Saving / loading the connections JSON file
"""
import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from KLOG.cluster.kube_client import ClusterClient
from KLOG.errors import ConnectionNotFound, KLOGError, TransportFailure
from KLOG.models import ConnectionConfig, ConnectionSummary
from KLOG.tunnel.ssh_tunnel import TunnelManager
from KLOG.util import KeyedLocks, extract_api_server

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., ClusterClient]

_CONNECTION_LIST = TypeAdapter(List[ConnectionConfig])


class StoredConnection:
    """A registered connection with its live resources"""

    def __init__(self, config: ConnectionConfig, client: ClusterClient,
                 tunnel_port: Optional[int] = None):
        self.config = config
        self.client = client
        self.tunnel_port = tunnel_port

    @property
    def id(self) -> str:
        return self.config.id


class ConnectionManager:
    """
    Registry of cluster connections keyed by id

    A connection with SSH settings reaches its API server only through the
    tunnel registered under the same id.
    """

    def __init__(self, tunnels: TunnelManager,
                 client_factory: ClientFactory = ClusterClient.from_kubeconfig,
                 tls_insecure: bool = False):
        self.tunnels = tunnels
        self.client_factory = client_factory
        self.tls_insecure = tls_insecure
        self._connections: Dict[str, StoredConnection] = {}
        self._lock = threading.Lock()
        self._id_locks = KeyedLocks()

    def set_tls_insecure(self, insecure: bool) -> None:
        """Applies to clients created from now on"""
        self.tls_insecure = insecure

    def _open(self, connection_id: str, config: ConnectionConfig) -> StoredConnection:
        tunnel_port = None
        if config.ssh:
            server = extract_api_server(config.kubeconfig)
            if server is None:
                raise TransportFailure(
                    f"Connection {connection_id}: kubeconfig has no cluster server to reach through SSH"
                )
            remote_host, remote_port = server
            tunnel_port = self.tunnels.create_tunnel(connection_id, config.ssh, remote_host, remote_port)

        try:
            client = self.client_factory(config.kubeconfig, tunnel_port=tunnel_port,
                                         tls_insecure=self.tls_insecure)
        except Exception:
            if tunnel_port is not None:
                self.tunnels.close_tunnel(connection_id)
            raise

        stored_config = config.model_copy(update={"id": connection_id})
        return StoredConnection(stored_config, client, tunnel_port)

    def add(self, config: ConnectionConfig) -> str:
        """
        Register a connection, opening its tunnel and cluster client

        Returns:
            The connection id (generated when the config has none)
        """
        connection_id = config.id or str(uuid4())
        with self._id_locks.hold(connection_id):
            if self.get(connection_id) is not None:
                self.remove(connection_id)

            stored = self._open(connection_id, config)
            with self._lock:
                self._connections[connection_id] = stored

        logger.info(f"Connection {connection_id} ({config.name}) added"
                    + (f" via tunnel port {stored.tunnel_port}" if stored.tunnel_port else ""))
        return connection_id

    def test(self, config: ConnectionConfig) -> bool:
        """SSH handshake (if any), then list namespaces through a temporary connection"""
        if config.ssh and not self.tunnels.test_connection(config.ssh):
            return False

        temp_id = f"test-{int(time.time() * 1000)}-{uuid4().hex[:8]}"
        stored = None
        try:
            stored = self._open(temp_id, config)
            stored.client.list_namespaces()
            return True
        except (KLOGError, OSError) as e:
            logger.warning(f"Connection test for {config.name} failed: {e}")
            return False
        finally:
            if stored is not None:
                stored.client.close()
            self.tunnels.close_tunnel(temp_id)

    def remove(self, connection_id: str) -> None:
        """Close the connection's client and tunnel; unknown ids are ignored"""
        with self._id_locks.hold(connection_id):
            with self._lock:
                stored = self._connections.pop(connection_id, None)
            if stored is None:
                return
            stored.client.close()
            self.tunnels.close_tunnel(connection_id)
            logger.info(f"Connection {connection_id} removed")

    def remove_all(self) -> None:
        for connection_id in self.ids():
            self.remove(connection_id)

    def get(self, connection_id: str) -> Optional[StoredConnection]:
        with self._lock:
            return self._connections.get(connection_id)

    def get_client(self, connection_id: str) -> ClusterClient:
        stored = self.get(connection_id)
        if stored is None:
            raise ConnectionNotFound(connection_id)
        return stored.client

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def list(self) -> List[ConnectionSummary]:
        with self._lock:
            stored = list(self._connections.values())
        return [
            ConnectionSummary(id=s.id, name=s.config.name, has_ssh=s.config.ssh is not None)
            for s in stored
        ]

    def save(self, path: Union[str, Path]) -> int:
        """
        Write connection definitions as a JSON array of {id, name, ssh?, kubeconfig}

        Tunnel ports are runtime state and are not written.

        Returns:
            Number of connections written
        """
        with self._lock:
            data = [s.config.to_json_dict() for s in self._connections.values()]
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.info(f"Saved {len(data)} connections to {path}")
        return len(data)

    def read(self, path: Union[str, Path]) -> List[ConnectionConfig]:
        """Parse and validate a connections file without adding anything"""
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
        try:
            configs = _CONNECTION_LIST.validate_python(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid connections file {path}: {e}") from e
        return configs

    def load(self, path: Union[str, Path]) -> int:
        """
        Add every connection defined in a JSON file

        Returns:
            Number of connections added
        """
        configs = self.read(path)
        for config in configs:
            self.add(config)
        logger.info(f"Loaded {len(configs)} connections from {path}")
        return len(configs)
