"""Execution of iptables/ip6tables commands.

Failures are split in two: a missing rule reported by ``-C`` or ``-D`` is an
expected outcome and returned as ``False``; anything else raises
``FirewallError`` carrying the command output.
"""

import subprocess
from collections.abc import Sequence

from ..common.exceptions import FirewallError
from ..common.logging import get_logger
from .rules import Family

logger = get_logger(__name__)

# Output fragments iptables prints when a rule to check or delete is absent.
BENIGN_MARKERS = (
    "bad rule",
    "does a matching rule exist",
    "no chain/target/match",
)


def is_benign_failure(args: Sequence[str], output: str) -> bool:
    """Return True if a failed command only reports that a rule is absent."""
    if "-C" not in args and "-D" not in args:
        return False
    lowered = output.lower()
    return any(marker in lowered for marker in BENIGN_MARKERS)


class IptablesRunner:
    """Runs iptables (or ip6tables) synchronously, without a timeout."""

    def __init__(
        self,
        family: Family = Family.IPV4,
        binary: str | None = None,
        save_binary: str | None = None,
    ):
        self.family = family
        default = "iptables" if family == Family.IPV4 else "ip6tables"
        self.binary = binary or default
        self.save_binary = save_binary or f"{default}-save"

    def run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute ``binary args...`` and return the completed process.

        Raises:
            FirewallError: If the binary cannot be executed at all
        """
        command = [self.binary, *args]
        try:
            return subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            raise FirewallError(
                f"Failed to execute {self.binary}: {e}", command=command
            ) from e

    def save(self) -> str:
        """Return the live rule table in iptables-save format."""
        command = [self.save_binary]
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            raise FirewallError(
                f"Failed to execute {self.save_binary}: {e}", command=command
            ) from e
        if result.returncode != 0:
            raise self._failure(command, result)
        return result.stdout

    def check(self, args: Sequence[str]) -> bool:
        """Run a ``-C`` command; False means the rule is absent."""
        result = self.run(args)
        if result.returncode == 0:
            return True
        if is_benign_failure(args, _output(result)):
            return False
        raise self._failure([self.binary, *args], result)

    def apply(self, args: Sequence[str]) -> None:
        """Run a mutating command that must succeed."""
        result = self.run(args)
        if result.returncode != 0:
            raise self._failure([self.binary, *args], result)

    def delete(self, args: Sequence[str]) -> bool:
        """Run a ``-D`` command; False means there was nothing to delete."""
        result = self.run(args)
        if result.returncode == 0:
            return True
        if is_benign_failure(args, _output(result)):
            return False
        raise self._failure([self.binary, *args], result)

    def _failure(
        self, command: list[str], result: subprocess.CompletedProcess[str]
    ) -> FirewallError:
        output = _output(result).strip()
        logger.error(
            "Firewall command failed",
            command=" ".join(command),
            returncode=result.returncode,
            output=output,
        )
        return FirewallError(
            f"{command[0]} failed with exit code {result.returncode}: {output}",
            command=command,
            returncode=result.returncode,
            output=output,
        )


def _output(result: subprocess.CompletedProcess[str]) -> str:
    return (result.stdout or "") + (result.stderr or "")
