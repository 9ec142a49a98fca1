"""High-level operations exposed to an API or UI layer."""

import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from .common.exceptions import ConfigurationError, FirewallError
from .common.logging import get_logger
from .config import ClientConfig, GeneralConfig, ManagerConfig, ServerConfig
from .firewall import FirewallReconciler
from .logs import HEARTBEAT_INTERVAL, LogBroadcastHub, Subscriber, stream_events
from .network import InterfaceJanitor
from .supervisor import ProcessSupervisor

logger = get_logger(__name__)


class ManagerService:
    """Wires configuration, supervisor, firewall and log hub together."""

    def __init__(
        self,
        config: ManagerConfig,
        hub: LogBroadcastHub | None = None,
        reconciler: FirewallReconciler | None = None,
        janitor: InterfaceJanitor | None = None,
        supervisor: ProcessSupervisor | None = None,
    ):
        self.config = config
        self.hub = hub or LogBroadcastHub()
        self.reconciler = reconciler or FirewallReconciler()
        self.janitor = janitor or InterfaceJanitor()
        self.supervisor = supervisor or ProcessSupervisor(
            config, hub=self.hub, reconciler=self.reconciler, janitor=self.janitor
        )

    def sanitize(self) -> int:
        """Remove every owned rule left by previous runs.

        Returns:
            Number of rules removed, or 0 if the purge failed
        """
        logger.info("Performing startup cleanup...")
        try:
            removed = self.reconciler.cleanup_all()
        except FirewallError as e:
            logger.warning("Startup cleanup failed", error=str(e))
            return 0
        logger.info("Startup cleanup completed. Environment sanitized.", removed=removed)
        return removed

    def status(self) -> dict[str, Any]:
        general, _, _ = self.config.snapshot()
        binaries = self.supervisor.get_binaries_info()

        try:
            firewall_stats: dict[str, int] | None = self.reconciler.get_stats()
        except FirewallError:
            firewall_stats = None
        try:
            interfaces = [i.model_dump() for i in self.janitor.list_tunnel_interfaces()]
        except OSError:
            interfaces = []

        return {
            "enabled": general.enabled,
            "system": "running",
            "binary_ok": binaries["ok"],
            "processes": [p.model_dump(mode="json") for p in self.supervisor.get_status()],
            "diagnostics": {
                "binaries": binaries,
                "iptables": firewall_stats,
                "interfaces": interfaces,
            },
        }

    def rules(self) -> dict[str, Any]:
        """Raw IPv4 rule dump plus its lines."""
        raw = self.reconciler.get_rules()
        return {"raw": raw, "rules": raw.split("\n")}

    def apply_config(
        self,
        general: GeneralConfig,
        clients: list[ClientConfig],
        servers: list[ServerConfig],
    ) -> int:
        """Replace the configuration, persist it, and restart all instances.

        Raises:
            ConfigurationError: If the configuration cannot be saved; nothing
                is restarted in that case
        """
        self.config.update(general, clients, servers)
        self.config.save()
        return self.supervisor.restart()

    def restart(self) -> int:
        return self.supervisor.restart()

    def reset_config(self) -> None:
        """Delete the config file, restore defaults and stop everything."""
        if self.config.path:
            try:
                Path(self.config.path).unlink(missing_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Failed to delete config file: {e}") from e

        defaults = ManagerConfig()
        self.config.update(defaults.general, defaults.clients, defaults.servers)
        self.supervisor.stop_all()

    def subscribe_logs(self) -> Subscriber:
        return self.hub.subscribe()

    def unsubscribe_logs(self, subscriber: Subscriber) -> None:
        self.hub.unsubscribe(subscriber)

    def stream_logs(
        self,
        cancelled: threading.Event | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> Iterator[str]:
        return stream_events(self.hub, heartbeat_interval, cancelled)
