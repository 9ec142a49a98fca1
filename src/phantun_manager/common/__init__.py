"""Common utilities and shared functionality."""

from .exceptions import (
    BinaryNotFoundError,
    ConfigurationError,
    FirewallError,
    PhantunManagerError,
    ProcessError,
    SafetyPolicyError,
    SubscriberClosed,
)
from .logging import HubLogHandler, get_logger, setup_logging
from .utils import find_binary, short_file_hash

__all__ = [
    # Exceptions
    "PhantunManagerError",
    "ConfigurationError",
    "ProcessError",
    "BinaryNotFoundError",
    "FirewallError",
    "SafetyPolicyError",
    "SubscriberClosed",
    # Logging
    "HubLogHandler",
    "get_logger",
    "setup_logging",
    # Utils
    "find_binary",
    "short_file_hash",
]
