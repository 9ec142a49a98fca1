"""Shared pytest fixtures for Phantun manager tests."""

import io
from unittest.mock import Mock

import pytest

from phantun_manager.config import ClientConfig, GeneralConfig, ManagerConfig, ServerConfig
from phantun_manager.firewall import Family, FirewallReconciler
from phantun_manager.logs import LogBroadcastHub
from phantun_manager.network import InterfaceJanitor

from fakes import FakeIptables


@pytest.fixture
def ipt4():
    return FakeIptables(Family.IPV4)


@pytest.fixture
def ipt6():
    return FakeIptables(Family.IPV6)


@pytest.fixture
def reconciler(ipt4, ipt6):
    return FirewallReconciler(ipv4=ipt4, ipv6=ipt6)


@pytest.fixture
def hub():
    return LogBroadcastHub()


@pytest.fixture
def janitor():
    mock_janitor = Mock(spec=InterfaceJanitor)
    mock_janitor.cleanup_unused.return_value = []
    mock_janitor.list_tunnel_interfaces.return_value = []
    return mock_janitor


@pytest.fixture
def client_spec():
    return ClientConfig(
        id="client-1",
        alias="game",
        enabled=True,
        local_addr="127.0.0.1",
        local_port=1234,
        remote_addr="203.0.113.10",
        remote_port=4567,
        tun_name="tun0",
    )


@pytest.fixture
def server_spec():
    return ServerConfig(
        id="server-1",
        alias="relay",
        enabled=True,
        local_port=4567,
        remote_addr="127.0.0.1",
        remote_port=1234,
        tun_name="tun1",
    )


@pytest.fixture
def make_config(tmp_path):
    """Build a ManagerConfig bound to a temporary file."""

    def factory(enabled=True, clients=(), servers=()):
        config = ManagerConfig(
            general=GeneralConfig(enabled=enabled),
            clients=list(clients),
            servers=list(servers),
        )
        config.set_path(str(tmp_path / "config.json"))
        return config

    return factory


@pytest.fixture
def temp_binaries(tmp_path):
    """Create executable stand-ins for phantun_client and phantun_server.

    Returns:
        tuple: (client_path, server_path) as strings
    """
    paths = []
    for name in ("phantun_client", "phantun_server"):
        path = tmp_path / name
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(0o755)
        paths.append(str(path))
    return tuple(paths)


@pytest.fixture
def mock_popen(monkeypatch):
    """Mock subprocess.Popen in the process module.

    Each spawned mock process prints one line on stdout and one on stderr,
    then keeps running until terminated.

    Returns:
        Mock: Mocked Popen class
    """
    pids = iter(range(1000, 2000))

    def spawn(command, **kwargs):
        process = Mock()
        process.args = command
        process.pid = next(pids)
        process.returncode = None
        process.poll.return_value = None
        process.stdout = io.BytesIO(b"listening\n")
        process.stderr = io.BytesIO(b"warning: no handshake\n")

        def send_signal(sig):
            process.poll.return_value = -sig
            process.returncode = -sig

        process.send_signal.side_effect = send_signal
        return process

    popen = Mock(side_effect=spawn)
    monkeypatch.setattr("phantun_manager.process.subprocess.Popen", popen)
    return popen
