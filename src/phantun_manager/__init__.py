"""Phantun Manager - supervision of Phantun tunnels and their firewall state."""

from .common.exceptions import (
    BinaryNotFoundError,
    ConfigurationError,
    FirewallError,
    PhantunManagerError,
    ProcessError,
    SafetyPolicyError,
    SubscriberClosed,
)
from .common.logging import get_logger, setup_logging
from .config import (
    ClientConfig,
    GeneralConfig,
    InstanceKind,
    ManagerConfig,
    ServerConfig,
    default_config,
    load_config,
)
from .firewall import FirewallReconciler, IptablesRunner
from .logs import LogBroadcastHub, LogRecord, LogStream, Subscriber, stream_events
from .network import InterfaceJanitor
from .process import TunnelProcess
from .service import ManagerService
from .supervisor import ProcessStatus, ProcessSupervisor, RunningProcess

__version__ = "0.1.0"


__all__ = [
    # Configuration
    "ClientConfig",
    "ServerConfig",
    "GeneralConfig",
    "ManagerConfig",
    "InstanceKind",
    "load_config",
    "default_config",
    # Core components
    "ProcessSupervisor",
    "RunningProcess",
    "ProcessStatus",
    "TunnelProcess",
    "FirewallReconciler",
    "IptablesRunner",
    "InterfaceJanitor",
    "LogBroadcastHub",
    "LogRecord",
    "LogStream",
    "Subscriber",
    "stream_events",
    "ManagerService",
    # Exceptions
    "PhantunManagerError",
    "ConfigurationError",
    "ProcessError",
    "BinaryNotFoundError",
    "FirewallError",
    "SafetyPolicyError",
    "SubscriberClosed",
    # Logging
    "get_logger",
    "setup_logging",
]
