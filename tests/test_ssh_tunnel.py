import socket
import threading

import paramiko
import pytest
from unittest.mock import MagicMock

from KLOG.errors import AuthFailure, TransportFailure
from KLOG.models import SSHEndpoint
from KLOG.tunnel.ssh_tunnel import TunnelManager, relay


@pytest.fixture
def ssh_config():
    return SSHEndpoint(host="bastion.example.com", port=22, username="ops",
                       private_key_path="/home/ops/.ssh/id_ed25519")


@pytest.fixture
def mock_ssh_client(mocker):
    """Fixture that replaces paramiko.SSHClient with a connected mock."""
    client = MagicMock()
    transport = MagicMock()
    transport.is_active.return_value = True
    transport.open_channel.return_value = None
    client.get_transport.return_value = transport
    mocker.patch("KLOG.tunnel.ssh_tunnel.paramiko.SSHClient", return_value=client)
    return client


@pytest.fixture
def manager():
    manager = TunnelManager(connect_timeout=1.0)
    yield manager
    manager.close_all()


def test_create_tunnel_binds_loopback_port(manager, mock_ssh_client, ssh_config):
    port = manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)

    assert port > 0
    assert manager.get_tunnel_port("c1") == port
    assert manager.is_alive("c1")
    mock_ssh_client.connect.assert_called_once()
    kwargs = mock_ssh_client.connect.call_args.kwargs
    assert kwargs["hostname"] == "bastion.example.com"
    assert kwargs["username"] == "ops"
    assert kwargs["key_filename"] == "/home/ops/.ssh/id_ed25519"
    assert kwargs["timeout"] == 1.0

    with socket.create_connection(("127.0.0.1", port), timeout=2):
        pass


def test_inbound_connection_opens_direct_tcpip_channel(manager, mock_ssh_client, ssh_config):
    opened = threading.Event()
    channel_end, remote_end = socket.socketpair()
    transport = mock_ssh_client.get_transport.return_value

    def open_channel(kind, dest, origin):
        opened.set()
        return channel_end

    transport.open_channel.side_effect = open_channel
    port = manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)

    with socket.create_connection(("127.0.0.1", port), timeout=2) as local:
        assert opened.wait(2)
        local.sendall(b"GET /version\r\n")
        remote_end.settimeout(2)
        assert remote_end.recv(1024) == b"GET /version\r\n"
        remote_end.sendall(b"HTTP/1.1 200 OK\r\n")
        local.settimeout(2)
        assert local.recv(1024) == b"HTTP/1.1 200 OK\r\n"

    kind, dest, _ = transport.open_channel.call_args.args
    assert kind == "direct-tcpip"
    assert dest == ("10.0.0.5", 6443)
    remote_end.close()


def test_relay_copies_both_ways_until_close():
    local_a, local_b = socket.socketpair()
    chan_a, chan_b = socket.socketpair()
    worker = threading.Thread(target=relay, args=(local_a, chan_a), daemon=True)
    worker.start()

    local_b.sendall(b"ping")
    chan_b.settimeout(2)
    assert chan_b.recv(16) == b"ping"
    chan_b.sendall(b"pong")
    local_b.settimeout(2)
    assert local_b.recv(16) == b"pong"

    local_b.close()
    worker.join(timeout=2)
    assert not worker.is_alive()
    for sock in (local_a, chan_a, chan_b):
        sock.close()


def test_second_tunnel_closes_first_listener(manager, mocker, ssh_config):
    """
    Tests that re-creating a tunnel for the same id leaves only the new listener.
    """
    clients = [MagicMock(), MagicMock()]
    for client in clients:
        client.get_transport.return_value = MagicMock()
    mocker.patch("KLOG.tunnel.ssh_tunnel.paramiko.SSHClient", side_effect=clients)

    first_port = manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)
    second_port = manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)

    assert manager.get_tunnel_port("c1") == second_port
    clients[0].close.assert_called_once()
    if first_port != second_port:
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", first_port), timeout=1).close()


def test_close_tunnel_is_idempotent(manager, mock_ssh_client, ssh_config):
    manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)

    manager.close_tunnel("c1")
    manager.close_tunnel("c1")
    manager.close_tunnel("unknown")

    assert manager.get_tunnel_port("c1") is None
    mock_ssh_client.close.assert_called_once()


def test_auth_failure_raises_typed_error(manager, mock_ssh_client, ssh_config):
    mock_ssh_client.connect.side_effect = paramiko.AuthenticationException("denied")

    with pytest.raises(AuthFailure):
        manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)
    assert manager.get_tunnel_port("c1") is None
    mock_ssh_client.close.assert_called_once()


def test_connect_error_raises_transport_failure(manager, mock_ssh_client, ssh_config):
    mock_ssh_client.connect.side_effect = socket.timeout("timed out")

    with pytest.raises(TransportFailure):
        manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)


def test_test_connection_success_leaves_nothing_open(manager, mock_ssh_client, ssh_config):
    assert manager.test_connection(ssh_config) is True

    mock_ssh_client.close.assert_called_once()
    assert manager.get_tunnel_port("c1") is None


@pytest.mark.parametrize("error", [
    paramiko.AuthenticationException("denied"),
    paramiko.SSHException("no banner"),
    OSError("unreachable"),
])
def test_test_connection_failure_returns_false(manager, mock_ssh_client, ssh_config, error):
    mock_ssh_client.connect.side_effect = error

    assert manager.test_connection(ssh_config) is False


def test_close_all(manager, mocker, ssh_config):
    mocker.patch("KLOG.tunnel.ssh_tunnel.paramiko.SSHClient", side_effect=lambda: MagicMock())

    manager.create_tunnel("c1", ssh_config, "10.0.0.5", 6443)
    manager.create_tunnel("c2", ssh_config, "10.0.0.6", 6443)
    manager.close_all()

    assert manager.get_tunnel_port("c1") is None
    assert manager.get_tunnel_port("c2") is None
