"""Custom exceptions for the Phantun manager."""


class PhantunManagerError(Exception):
    """Base exception for all Phantun manager errors."""

    pass


class ConfigurationError(PhantunManagerError):
    """Raised when configuration is invalid or cannot be persisted."""

    pass


class ProcessError(PhantunManagerError):
    """Raised when a tunnel process cannot be started."""

    pass


class BinaryNotFoundError(ProcessError):
    """Raised when a Phantun binary is not found or not executable."""

    pass


class FirewallError(PhantunManagerError):
    """Raised when an iptables command fails for a reason other than a missing rule."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.output = output


class SafetyPolicyError(FirewallError):
    """Raised when a rule would redirect the reserved administrative port."""

    pass


class SubscriberClosed(PhantunManagerError):
    """Raised when reading from a log subscriber that has been closed."""

    pass
