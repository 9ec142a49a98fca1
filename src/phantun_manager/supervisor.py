"""Supervision of Phantun client and server processes.

The supervisor turns the configured instance list into running processes:
stale tunnel interfaces are removed, firewall rules are applied before each
spawn and rolled back if the spawn fails, and process output is wired into
the log hub. Stopping relies on the global firewall purge rather than
per-instance bookkeeping, so rules leaked by crashes are removed as well.
"""

import os
import threading
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .common.exceptions import (
    BinaryNotFoundError,
    ConfigurationError,
    FirewallError,
    PhantunManagerError,
)
from .common.logging import get_logger
from .common.utils import find_binary, short_file_hash
from .config import (
    BaseInstanceConfig,
    ClientConfig,
    InstanceKind,
    InstanceSpec,
    ManagerConfig,
    ServerConfig,
)
from .firewall import Family, FirewallReconciler, Rule
from .logs import LogBroadcastHub
from .network import InterfaceJanitor
from .process import TunnelProcess

logger = get_logger(__name__)

BINARY_NAMES = {
    InstanceKind.CLIENT: "phantun_client",
    InstanceKind.SERVER: "phantun_server",
}

BINARY_ENV_VARS = {
    InstanceKind.CLIENT: "PHANTUN_CLIENT_BINARY",
    InstanceKind.SERVER: "PHANTUN_SERVER_BINARY",
}


class RunningProcess(BaseModel):
    """Runtime record of one started instance."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    spec: InstanceSpec
    process: TunnelProcess
    started_at: datetime = Field(default_factory=datetime.now)

    @property
    def kind(self) -> InstanceKind:
        return self.spec.kind


class ProcessStatus(BaseModel):
    """Status snapshot entry for one tracked instance."""

    id: str
    alias: str
    kind: InstanceKind
    pid: int | None
    running: bool


class ProcessSupervisor:
    """Starts, stops and tracks all configured Phantun instances."""

    def __init__(
        self,
        config: ManagerConfig,
        hub: LogBroadcastHub | None = None,
        reconciler: FirewallReconciler | None = None,
        janitor: InterfaceJanitor | None = None,
        client_binary: str | None = None,
        server_binary: str | None = None,
    ):
        self.config = config
        self.hub = hub or LogBroadcastHub()
        self.reconciler = reconciler or FirewallReconciler()
        self.janitor = janitor or InterfaceJanitor()
        self._binaries = {
            InstanceKind.CLIENT: client_binary,
            InstanceKind.SERVER: server_binary,
        }
        self._lock = threading.Lock()
        self._processes: dict[str, RunningProcess] = {}

    # -- lifecycle ----------------------------------------------------------

    def start_all(self) -> int:
        """Start every enabled instance.

        One instance failing does not prevent the others from starting.

        Returns:
            Number of instances started
        """
        with self._lock:
            general, clients, servers = self.config.snapshot()
            if not general.enabled:
                logger.info("Global switch disabled. Skipping start.")
                return 0

            allowed = [i.tun_name for i in [*clients, *servers] if i.tun_name]
            self.janitor.cleanup_unused(allowed)

            enabled: list[BaseInstanceConfig] = [c for c in clients if c.enabled]
            enabled += [s for s in servers if s.enabled]
            if not enabled:
                logger.info("No enabled instances found. Skipping start.")
                return 0

            logger.info("Starting active instances", count=len(enabled))
            started = 0
            for spec in enabled:
                try:
                    self._start_instance(spec)
                    started += 1
                except PhantunManagerError as e:
                    logger.error(
                        "Failed to start instance",
                        kind=spec.kind.value,
                        alias=spec.display_name,
                        error=str(e),
                    )
            return started

    def stop_all(self) -> None:
        """Signal every process to terminate, then purge all owned firewall rules."""
        with self._lock:
            for instance_id, running in list(self._processes.items()):
                logger.info(
                    "Stopping process",
                    id=instance_id,
                    kind=running.kind.value,
                    pid=running.process.pid,
                )
                running.process.terminate()
                del self._processes[instance_id]

            try:
                removed = self.reconciler.cleanup_all()
            except FirewallError as e:
                logger.error("Error during forced cleanup", error=str(e))
            else:
                logger.info("Global firewall cleanup executed", removed=removed)

    def restart(self) -> int:
        self.stop_all()
        return self.start_all()

    def get_status(self) -> list[ProcessStatus]:
        """Snapshot of tracked instances; liveness comes from the cached exit state."""
        with self._lock:
            return [
                ProcessStatus(
                    id=instance_id,
                    alias=running.spec.alias,
                    kind=running.kind,
                    pid=running.process.pid,
                    running=running.process.is_running(),
                )
                for instance_id, running in self._processes.items()
            ]

    def get_process(self, instance_id: str) -> RunningProcess | None:
        with self._lock:
            return self._processes.get(instance_id)

    # -- single instance ----------------------------------------------------

    def _start_instance(self, spec: BaseInstanceConfig) -> RunningProcess:
        if not spec.id:
            raise ConfigurationError(f"Instance '{spec.display_name}' has no identifier")

        existing = self._processes.get(spec.id)
        if existing is not None and existing.process.is_running():
            logger.info("Instance already running", alias=spec.display_name, pid=existing.process.pid)
            return existing

        spec = spec.with_defaults()
        self._apply_rules(spec)

        try:
            binary = self._resolve_binary(spec.kind)
            process = TunnelProcess(spec, binary, self.hub)
            pid = process.start()
        except PhantunManagerError:
            self._rollback_rules(spec)
            raise

        running = RunningProcess(spec=spec, process=process, started_at=process.started_at)
        self._processes[spec.id] = running
        logger.info(
            f"Started {spec.kind.value}",
            alias=spec.display_name,
            id=spec.id,
            pid=pid,
        )
        return running

    def _apply_rules(self, spec: BaseInstanceConfig) -> None:
        """Apply IPv4 rules (mandatory) and IPv6 rules (best-effort)."""
        if not isinstance(spec, (ClientConfig, ServerConfig)):
            raise ConfigurationError(f"Unsupported instance type: {type(spec).__name__}")

        if isinstance(spec, ClientConfig):
            self.reconciler.setup_client(spec)
        else:
            self.reconciler.setup_server(spec)

        if spec.ipv4_only:
            return
        try:
            if isinstance(spec, ClientConfig):
                self.reconciler.setup_client_ipv6(spec)
            else:
                self.reconciler.setup_server_ipv6(spec)
        except FirewallError as e:
            logger.warning(
                "Failed to setup IPv6 firewall, continuing IPv4-only",
                alias=spec.display_name,
                error=str(e),
            )

    def _rollback_rules(self, spec: BaseInstanceConfig) -> None:
        """Remove the rules added for a failed start.

        Instances with identical addressing install identical rules, so a
        rule another running instance also needs is left in place.
        """
        logger.info("Rolling back firewall rules", alias=spec.display_name)
        families = [Family.IPV4] if spec.ipv4_only else [Family.IPV4, Family.IPV6]
        for family in families:
            in_use = self._rules_in_use(family, exclude=spec.id)
            orphaned = [
                rule for rule in self.reconciler.instance_rules(spec, family)
                if rule not in in_use
            ]
            self.reconciler.delete_rules(orphaned, family)

    def _rules_in_use(self, family: Family, exclude: str) -> set[Rule]:
        rules: set[Rule] = set()
        for instance_id, running in self._processes.items():
            if instance_id == exclude or not running.process.is_running():
                continue
            if family == Family.IPV6 and running.spec.ipv4_only:
                continue
            rules.update(self.reconciler.instance_rules(running.spec, family))
        return rules

    # -- binaries -----------------------------------------------------------

    def _resolve_binary(self, kind: InstanceKind) -> str:
        explicit = self._binaries[kind]
        if explicit:
            if os.path.isfile(explicit) and os.access(explicit, os.X_OK):
                return explicit
            raise BinaryNotFoundError(f"Phantun binary not usable: {explicit}")

        path = find_binary(BINARY_NAMES[kind], BINARY_ENV_VARS[kind])
        if path is None:
            raise BinaryNotFoundError(f"{BINARY_NAMES[kind]} not found")
        return path

    def get_binaries_info(self) -> dict[str, Any]:
        """Short hashes of the client and server binaries, or ``missing``."""
        info: dict[str, Any] = {}
        for kind in (InstanceKind.CLIENT, InstanceKind.SERVER):
            try:
                info[kind.value] = short_file_hash(self._resolve_binary(kind))
            except BinaryNotFoundError:
                info[kind.value] = "missing"
        info["ok"] = info["client"] != "missing" and info["server"] != "missing"
        return info
