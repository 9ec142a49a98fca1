"""Tests for the ManagerService facade."""

import json
import threading
from pathlib import Path
from unittest.mock import Mock

import pytest

from phantun_manager.common.exceptions import ConfigurationError
from phantun_manager.config import GeneralConfig, ServerConfig
from phantun_manager.logs import HEARTBEAT_FRAME
from phantun_manager.network import InterfaceInfo
from phantun_manager.service import ManagerService
from phantun_manager.supervisor import ProcessSupervisor


@pytest.fixture
def make_service(make_config, hub, reconciler, janitor, temp_binaries):
    client_binary, server_binary = temp_binaries

    def factory(**config_kwargs):
        config = make_config(**config_kwargs)
        supervisor = ProcessSupervisor(
            config,
            hub=hub,
            reconciler=reconciler,
            janitor=janitor,
            client_binary=client_binary,
            server_binary=server_binary,
        )
        return ManagerService(
            config, hub=hub, reconciler=reconciler, janitor=janitor, supervisor=supervisor
        )

    return factory


class TestSanitize:
    """Test startup cleanup."""

    def test_removes_leftovers(self, make_service, ipt4):
        ipt4.add_raw(
            "nat", "POSTROUTING", "-s", "192.168.200.2/32", "-m", "comment",
            "--comment", "phantun", "-j", "MASQUERADE",
        )

        assert make_service().sanitize() == 1
        assert ipt4.tagged() == []

    def test_unreadable_rules_are_tolerated(self, make_service, ipt4):
        ipt4.save_error = "iptables-save: not found"
        assert make_service().sanitize() == 0


class TestStatus:
    """Test the status document."""

    def test_status(self, make_service, mock_popen, janitor, client_spec, server_spec):
        janitor.list_tunnel_interfaces.return_value = [
            InterfaceInfo(name="tun0", status="UP", addrs=["192.168.200.1"])
        ]
        service = make_service(clients=[client_spec], servers=[server_spec])
        service.supervisor.start_all()

        status = service.status()

        assert status["enabled"] is True
        assert status["system"] == "running"
        assert status["binary_ok"] is True
        assert {p["id"] for p in status["processes"]} == {"client-1", "server-1"}
        assert status["processes"][0]["kind"] in ("client", "server")
        assert status["diagnostics"]["iptables"] == {
            "masquerade": 2,
            "dnat": 1,
            "forward": 2,
            "total": 5,
        }
        assert status["diagnostics"]["interfaces"] == [
            {"name": "tun0", "status": "UP", "addrs": ["192.168.200.1"]}
        ]
        json.dumps(status)

    def test_status_without_firewall_access(self, make_service, ipt4, janitor):
        ipt4.save_error = "iptables-save: permission denied"
        janitor.list_tunnel_interfaces.side_effect = OSError("no /sys")

        status = make_service().status()

        assert status["diagnostics"]["iptables"] is None
        assert status["diagnostics"]["interfaces"] == []

    def test_rules(self, make_service, client_spec):
        service = make_service()
        service.reconciler.setup_client(client_spec)

        rules = service.rules()

        assert "*nat" in rules["raw"]
        assert rules["rules"] == rules["raw"].split("\n")


class TestConfigChanges:
    """Test applying and resetting configuration."""

    def test_apply_config_persists_and_restarts(self, make_service, mock_popen, ipt4):
        service = make_service(enabled=False)

        started = service.apply_config(
            GeneralConfig(enabled=True),
            [],
            [ServerConfig(enabled=True, local_port=4567, remote_port=1234)],
        )

        assert started == 1
        saved = json.loads(Path(service.config.path).read_text())
        assert saved["general"]["enabled"] is True
        assert saved["servers"][0]["id"] == service.config.servers[0].id
        assert saved["servers"][0]["tun_name"] == "tun0"
        assert len(ipt4.tagged()) == 4

    def test_apply_config_save_failure_skips_restart(self, make_service, mock_popen):
        service = make_service()
        service.config.set_path(None)

        with pytest.raises(ConfigurationError):
            service.apply_config(GeneralConfig(enabled=True), [], [])
        mock_popen.assert_not_called()

    def test_apply_disabled_config_stops_everything(
        self, make_service, mock_popen, ipt4, client_spec
    ):
        service = make_service(clients=[client_spec])
        service.supervisor.start_all()

        assert service.apply_config(GeneralConfig(enabled=False), [client_spec], []) == 0

        assert service.supervisor.get_status() == []
        assert ipt4.tagged() == []

    def test_reset_config(self, make_service, mock_popen, ipt4, client_spec):
        service = make_service(clients=[client_spec])
        service.config.save()
        service.supervisor.start_all()

        service.reset_config()

        assert not Path(service.config.path).exists()
        assert service.config.general.enabled is False
        assert service.config.clients == []
        assert service.supervisor.get_status() == []
        assert ipt4.tagged() == []

    def test_reset_without_file(self, make_service):
        service = make_service()
        service.reset_config()
        assert service.config.general.enabled is False

    def test_restart(self, make_service, mock_popen, client_spec):
        service = make_service(clients=[client_spec])
        service.supervisor.start_all()

        assert service.restart() == 1
        assert mock_popen.call_count == 2


class TestLogAccess:
    """Test log subscription through the service."""

    def test_subscribe_and_unsubscribe(self, make_service, hub):
        service = make_service()
        hub.publish_system("hello\n")

        subscriber = service.subscribe_logs()
        assert subscriber.get(timeout=0.1).content == "hello\n"

        service.unsubscribe_logs(subscriber)
        assert hub.subscriber_count == 0

    def test_stream_logs(self, make_service, hub):
        service = make_service()
        cancelled = threading.Event()

        events = service.stream_logs(cancelled, heartbeat_interval=0.05)
        assert next(events) == HEARTBEAT_FRAME
        cancelled.set()

        assert list(events) == []
        assert hub.subscriber_count == 0

    def test_default_components(self, make_config):
        service = ManagerService(make_config(), hub=Mock())
        assert service.supervisor.hub is service.hub
        assert service.supervisor.reconciler is service.reconciler
