"""Configuration models for Phantun client and server instances.

Instances are stored as two ordered lists (clients, then servers) in a JSON
file. Each instance carries a stable identifier that ties firewall rules,
processes and log records together; identifiers and tunnel interface names
are assigned on load when missing and written back to disk.
"""

import ipaddress
import threading
import uuid
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
)

from .common.exceptions import ConfigurationError
from .common.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "/etc/phantun/config.json"

# Linux IFNAMSIZ minus the trailing NUL
MAX_INTERFACE_NAME_LENGTH = 15


class InstanceKind(str, Enum):
    """Kind of Phantun endpoint."""

    CLIENT = "client"
    SERVER = "server"


class LogLevel(str, Enum):
    """Manager log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class TunnelAddressing(BaseModel):
    """Default addresses for the tunnel interface of one instance kind."""

    model_config = ConfigDict(frozen=True)

    tun_local: str
    tun_peer: str
    tun_local_ipv6: str
    tun_peer_ipv6: str


# Distinct subnets per kind so a client and a server can run on the same host.
DEFAULT_ADDRESSING = {
    InstanceKind.CLIENT: TunnelAddressing(
        tun_local="192.168.200.1",
        tun_peer="192.168.200.2",
        tun_local_ipv6="fcc8::1",
        tun_peer_ipv6="fcc8::2",
    ),
    InstanceKind.SERVER: TunnelAddressing(
        tun_local="192.168.201.1",
        tun_peer="192.168.201.2",
        tun_local_ipv6="fcc9::1",
        tun_peer_ipv6="fcc9::2",
    ),
}


class BaseInstanceConfig(BaseModel):
    """Fields shared by client and server instances."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")

    kind: InstanceKind
    id: str = Field(default="", description="Stable instance identifier")
    alias: str = Field(default="", description="Display name")
    enabled: bool = Field(default=False, description="Start this instance")
    local_port: int = Field(ge=1, le=65535, description="Local listen port")
    remote_port: int = Field(ge=1, le=65535, description="Remote port")
    tun_local: str = Field(default="", description="Tunnel interface IPv4 address")
    tun_peer: str = Field(default="", description="Tunnel peer IPv4 address")
    tun_local_ipv6: str = Field(default="", description="Tunnel interface IPv6 address")
    tun_peer_ipv6: str = Field(default="", description="Tunnel peer IPv6 address")
    tun_name: str = Field(default="", description="Tunnel interface name")
    handshake_file: str = Field(default="", description="Handshake packet file")
    ipv4_only: bool = Field(default=False, description="Disable IPv6 tunnel addressing")

    @field_validator("tun_local", "tun_peer")
    @classmethod
    def validate_ipv4(cls, v: str) -> str:
        """Validate optional IPv4 tunnel addresses."""
        if v:
            try:
                ipaddress.IPv4Address(v)
            except ValueError as e:
                raise ValueError(f"Invalid IPv4 address: {v}") from e
        return v

    @field_validator("tun_local_ipv6", "tun_peer_ipv6")
    @classmethod
    def validate_ipv6(cls, v: str) -> str:
        """Validate optional IPv6 tunnel addresses."""
        if v:
            try:
                ipaddress.IPv6Address(v)
            except ValueError as e:
                raise ValueError(f"Invalid IPv6 address: {v}") from e
        return v

    @field_validator("tun_name")
    @classmethod
    def validate_tun_name(cls, v: str) -> str:
        """Validate tunnel interface name."""
        if v:
            if len(v) > MAX_INTERFACE_NAME_LENGTH:
                raise ValueError(
                    f"Interface name must be at most {MAX_INTERFACE_NAME_LENGTH} characters"
                )
            if any(c.isspace() or c == "/" for c in v):
                raise ValueError(f"Invalid interface name: {v}")
        return v

    @property
    def display_name(self) -> str:
        return self.alias or self.id

    def with_defaults(self) -> "BaseInstanceConfig":
        """Return a copy with unset tunnel addresses filled with the kind's defaults."""
        defaults = DEFAULT_ADDRESSING[self.kind]
        update: dict[str, str] = {}
        if not self.tun_local:
            update["tun_local"] = defaults.tun_local
        if not self.tun_peer:
            update["tun_peer"] = defaults.tun_peer
        if not self.ipv4_only:
            if not self.tun_local_ipv6:
                update["tun_local_ipv6"] = defaults.tun_local_ipv6
            if not self.tun_peer_ipv6:
                update["tun_peer_ipv6"] = defaults.tun_peer_ipv6
        if not update:
            return self
        return self.model_copy(update=update)


class ClientConfig(BaseInstanceConfig):
    """Phantun client instance: local UDP endpoint, remote Phantun server."""

    kind: Literal[InstanceKind.CLIENT] = InstanceKind.CLIENT  # type: ignore[assignment]
    local_addr: str = Field(default="127.0.0.1", description="Local bind address")
    remote_addr: str = Field(min_length=1, description="Phantun server address")


class ServerConfig(BaseInstanceConfig):
    """Phantun server instance: local fake-TCP port, remote UDP service."""

    kind: Literal[InstanceKind.SERVER] = InstanceKind.SERVER  # type: ignore[assignment]
    remote_addr: str = Field(default="127.0.0.1", description="UDP service address")


InstanceSpec = Annotated[ClientConfig | ServerConfig, Field(discriminator="kind")]


class GeneralConfig(BaseModel):
    """Global settings."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    enabled: bool = Field(default=False, description="Global enable switch")
    log_level: LogLevel = Field(default=LogLevel.INFO)


class ManagerConfig(BaseModel):
    """Complete manager configuration, shared between the API layer and the supervisor."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    clients: list[ClientConfig] = Field(default_factory=list)
    servers: list[ServerConfig] = Field(default_factory=list)

    _path: str | None = PrivateAttr(default=None)
    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @property
    def path(self) -> str | None:
        return self._path

    def set_path(self, path: str | None) -> None:
        self._path = path

    def snapshot(self) -> tuple[GeneralConfig, list[ClientConfig], list[ServerConfig]]:
        """Return a consistent copy of the general settings and instance lists."""
        with self._lock:
            return (
                self.general.model_copy(),
                list(self.clients),
                list(self.servers),
            )

    def update(
        self,
        general: GeneralConfig,
        clients: list[ClientConfig],
        servers: list[ServerConfig],
    ) -> None:
        """Replace all configuration fields in a thread-safe manner."""
        with self._lock:
            self.general = general
            self.clients = list(clients)
            self.servers = list(servers)
            assign_identifiers(self)

    def save(self) -> None:
        """Write the configuration to its file as indented JSON.

        Raises:
            ConfigurationError: If no path is set or the file cannot be written
        """
        with self._lock:
            if not self._path:
                raise ConfigurationError("Configuration path is not set")
            data = self.model_dump_json(indent=2)
            try:
                path = Path(self._path)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(data + "\n")
            except OSError as e:
                raise ConfigurationError(
                    f"Failed to save config to {self._path}: {e}"
                ) from e
        logger.debug("Configuration saved", path=self._path)


def assign_identifiers(config: ManagerConfig) -> bool:
    """Fill missing instance IDs and tunnel interface names.

    Interface names are ``tun<N>`` where N is the instance position, clients
    first, then servers.

    Returns:
        True if anything was assigned
    """
    changed = False
    tun_index = 0

    def fill(instance: BaseInstanceConfig) -> BaseInstanceConfig:
        nonlocal changed, tun_index
        update: dict[str, str] = {}
        if not instance.id:
            update["id"] = str(uuid.uuid4())
        if not instance.tun_name:
            update["tun_name"] = f"tun{tun_index}"
        tun_index += 1
        if update:
            changed = True
            return instance.model_copy(update=update)
        return instance

    clients = [fill(c) for c in config.clients]
    servers = [fill(s) for s in config.servers]
    if changed:
        config.clients = clients
        config.servers = servers
    return changed


def default_config(path: str | None = None) -> ManagerConfig:
    """Return a configuration with the global switch off and no instances."""
    config = ManagerConfig()
    config.set_path(path)
    return config


def load_config(path: str = DEFAULT_CONFIG_PATH) -> ManagerConfig:
    """Load configuration from a JSON file.

    A missing file yields the defaults. Identifiers and interface names that
    had to be generated are saved back; if the file is read-only the
    in-memory values are used anyway.

    Raises:
        ConfigurationError: If the file exists but cannot be read or parsed
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.info("Config file not found, using defaults", path=path)
        return default_config(path)

    try:
        config = ManagerConfig.model_validate_json(config_path.read_text())
    except OSError as e:
        raise ConfigurationError(f"Failed to read config {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config {path}: {e}") from e
    config.set_path(path)

    if assign_identifiers(config):
        try:
            config.save()
        except ConfigurationError as e:
            logger.warning("Could not persist generated identifiers", error=str(e))

    return config
