"""
SSH Tunnel Module - local listeners forwarded over SSH to the cluster API

Handles:
- Key-authenticated SSH sessions (paramiko)
- One 127.0.0.1 listener per connection id on an OS-assigned port
- direct-tcpip channel per inbound connection with bidirectional relay
- Handshake-only connection tests with a bounded timeout
"""
import logging
import select
import socketserver
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import paramiko

from KLOG.errors import AuthFailure, KLOGError, TransportFailure
from KLOG.models import SSHEndpoint
from KLOG.util import KeyedLocks

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
KEEPALIVE_INTERVAL = 30
RELAY_BUFFER_SIZE = 32 * 1024


def relay(sock, chan, bufsize: int = RELAY_BUFFER_SIZE) -> None:
    """Copy bytes both ways between a local socket and an SSH channel until either side closes."""
    while True:
        readable, _, _ = select.select([sock, chan], [], [])
        if sock in readable:
            data = sock.recv(bufsize)
            if not data:
                break
            chan.sendall(data)
        if chan in readable:
            data = chan.recv(bufsize)
            if not data:
                break
            sock.sendall(data)


class ForwardHandler(socketserver.BaseRequestHandler):
    """Forwards one accepted local connection to remote_host:remote_port"""

    def handle(self):
        server: ForwardServer = self.server
        try:
            chan = server.transport.open_channel(
                "direct-tcpip",
                (server.remote_host, server.remote_port),
                self.request.getpeername(),
            )
        except Exception as e:
            logger.warning(f"Tunnel {server.connection_id}: forward to "
                           f"{server.remote_host}:{server.remote_port} failed: {e}")
            return

        if chan is None:
            logger.warning(f"Tunnel {server.connection_id}: channel request rejected by server")
            return

        try:
            relay(self.request, chan)
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug(f"Tunnel {server.connection_id}: relay ended: {e}")
        finally:
            chan.close()


class ForwardServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, connection_id: str, transport, remote_host: str, remote_port: int):
        self.connection_id = connection_id
        self.transport = transport
        self.remote_host = remote_host
        self.remote_port = remote_port
        super().__init__(("127.0.0.1", 0), ForwardHandler)


@dataclass
class Tunnel:
    """Live tunnel for one connection"""
    connection_id: str
    local_port: int
    server: ForwardServer
    client: paramiko.SSHClient
    thread: threading.Thread

    @property
    def alive(self) -> bool:
        transport = self.client.get_transport()
        return bool(transport and transport.is_active()) and self.thread.is_alive()


class TunnelManager:
    """
    Registry of SSH tunnels keyed by connection id

    Features:
    - At most one tunnel per connection id; creating another replaces it
    - Operations on one id are serialized, different ids run in parallel
    - Failures surface as AuthFailure / TransportFailure, never process-fatal
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout
        self._tunnels: Dict[str, Tunnel] = {}
        self._lock = threading.Lock()
        self._id_locks = KeyedLocks()

    def _connect(self, ssh_config: SSHEndpoint, timeout: float) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=ssh_config.host,
                port=ssh_config.port,
                username=ssh_config.username,
                key_filename=ssh_config.private_key_path,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthFailure(f"SSH authentication failed for {ssh_config.username}@{ssh_config.host}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportFailure(f"SSH connection to {ssh_config.host}:{ssh_config.port} failed: {e}") from e
        return client

    def create_tunnel(self, connection_id: str, ssh_config: SSHEndpoint,
                      remote_host: str, remote_port: int) -> int:
        """
        Open a tunnel and return its local port

        Args:
            connection_id: Owner of the tunnel; an existing tunnel for it is closed first
            ssh_config: SSH endpoint and key path
            remote_host: Host to reach from the SSH server
            remote_port: Port to reach from the SSH server

        Returns:
            The OS-assigned local port on 127.0.0.1
        """
        with self._id_locks.hold(connection_id):
            self.close_tunnel(connection_id)

            client = self._connect(ssh_config, self.connect_timeout)
            transport = client.get_transport()
            if transport is None:
                client.close()
                raise TransportFailure(f"SSH transport to {ssh_config.host} unavailable")
            transport.set_keepalive(KEEPALIVE_INTERVAL)

            try:
                server = ForwardServer(connection_id, transport, remote_host, remote_port)
            except OSError as e:
                client.close()
                raise TransportFailure(f"Could not bind tunnel listener: {e}") from e

            local_port = server.server_address[1]
            thread = threading.Thread(
                target=server.serve_forever,
                name=f"tunnel-{connection_id}",
                daemon=True,
            )
            thread.start()

            with self._lock:
                self._tunnels[connection_id] = Tunnel(connection_id, local_port, server, client, thread)

            logger.info(f"Tunnel {connection_id}: 127.0.0.1:{local_port} -> "
                        f"{ssh_config.host} -> {remote_host}:{remote_port}")
            return local_port

    def close_tunnel(self, connection_id: str) -> None:
        """Close the connection's tunnel; unknown ids are ignored"""
        with self._id_locks.hold(connection_id):
            with self._lock:
                tunnel = self._tunnels.pop(connection_id, None)
            if tunnel is None:
                return

            try:
                tunnel.server.shutdown()
                tunnel.server.server_close()
            finally:
                tunnel.client.close()
            logger.info(f"Tunnel {connection_id}: closed (port {tunnel.local_port})")

    def close_all(self) -> None:
        with self._lock:
            connection_ids = list(self._tunnels)
        for connection_id in connection_ids:
            self.close_tunnel(connection_id)

    def get_tunnel_port(self, connection_id: str) -> Optional[int]:
        with self._lock:
            tunnel = self._tunnels.get(connection_id)
        return tunnel.local_port if tunnel else None

    def is_alive(self, connection_id: str) -> bool:
        with self._lock:
            tunnel = self._tunnels.get(connection_id)
        return bool(tunnel and tunnel.alive)

    def test_connection(self, ssh_config: SSHEndpoint) -> bool:
        """SSH handshake only; True on success, False on any failure"""
        try:
            client = self._connect(ssh_config, self.connect_timeout)
        except KLOGError as e:
            logger.warning(f"SSH test failed: {e}")
            return False
        client.close()
        return True
