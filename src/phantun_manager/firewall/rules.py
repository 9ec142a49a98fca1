"""Typed firewall rules and iptables-save dump parsing.

A ``Rule`` renders itself for every iptables directive, so the add, check and
delete commands for one rule are always built from the same value. Rules read
back from the live table are ``SavedRule`` values, keyed by the table section
of the dump they were found in.
"""

import shlex
from collections.abc import Sequence
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ..common.logging import get_logger

logger = get_logger(__name__)

OWNER_TAG = "phantun"

# Administrative (SSH) port that must never be redirected.
RESERVED_ADMIN_PORT = 22


class Family(str, Enum):
    """Address family, selecting iptables or ip6tables."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


class RuleTarget(str, Enum):
    """Jump targets of the rules this manager creates."""

    MASQUERADE = "MASQUERADE"
    DNAT = "DNAT"
    ACCEPT = "ACCEPT"


OWNED_TARGETS = frozenset(target.value for target in RuleTarget)

ADD_DIRECTIVES = ("-A", "-I")


class Rule(BaseModel):
    """One iptables rule, independent of the directive used to apply it."""

    model_config = ConfigDict(frozen=True)

    table: str = Field(default="filter", description="iptables table")
    chain: str = Field(min_length=1, description="Chain name")
    matchers: tuple[str, ...] = Field(default=(), description="Match arguments")
    target: RuleTarget
    target_args: tuple[str, ...] = Field(default=(), description="Target arguments")
    tag: str | None = Field(default=OWNER_TAG, description="Ownership comment")
    insert: bool = Field(default=False, description="Insert at chain head instead of append")

    def to_args(self, directive: str) -> list[str]:
        """Render the rule for a directive such as ``-A``, ``-C`` or ``-D``."""
        args = ["-t", self.table, directive, self.chain, *self.matchers]
        if self.tag:
            args += ["-m", "comment", "--comment", self.tag]
        args += ["-j", self.target.value, *self.target_args]
        return args

    def add_args(self) -> list[str]:
        return self.to_args("-I" if self.insert else "-A")

    def check_args(self) -> list[str]:
        return self.to_args("-C")

    def delete_args(self) -> list[str]:
        return self.to_args("-D")

    def describe(self) -> str:
        return " ".join(self.add_args())


def as_check_directive(args: Sequence[str]) -> list[str] | None:
    """Rewrite the first ``-A``/``-I`` of an addition command into ``-C``.

    Returns:
        The check command, or None if ``args`` is not an addition
    """
    check_args = list(args)
    for index, arg in enumerate(check_args):
        if arg in ADD_DIRECTIVES:
            check_args[index] = "-C"
            # "-I CHAIN 1 ..." carries a position that -C does not accept
            if arg == "-I" and index + 2 < len(check_args) and check_args[index + 2].isdigit():
                del check_args[index + 2]
            return check_args
    return None


def masquerade_source(peer: str, family: Family = Family.IPV4, tag: str = OWNER_TAG) -> Rule:
    """Source NAT for traffic sourced from the tunnel peer (client mode)."""
    prefix = 32 if family == Family.IPV4 else 128
    return Rule(
        table="nat",
        chain="POSTROUTING",
        matchers=("-s", f"{peer}/{prefix}"),
        target=RuleTarget.MASQUERADE,
        tag=tag,
    )


def dnat_to_peer(local_port: int, peer: str, tag: str = OWNER_TAG) -> Rule:
    """Redirect inbound TCP on ``local_port`` to the tunnel peer (server mode).

    The peer keeps the original destination port.
    """
    return Rule(
        table="nat",
        chain="PREROUTING",
        matchers=("-p", "tcp", "--dport", str(local_port)),
        target=RuleTarget.DNAT,
        target_args=("--to-destination", peer),
        tag=tag,
    )


def masquerade_destination(peer: str, remote_port: int, tag: str = OWNER_TAG) -> Rule:
    """Masquerade TCP to the tunnel peer on the remote port (server mode)."""
    return Rule(
        table="nat",
        chain="POSTROUTING",
        matchers=("-p", "tcp", "-d", peer, "--dport", str(remote_port)),
        target=RuleTarget.MASQUERADE,
        tag=tag,
    )


def forward_accept(interface: str, inbound: bool, tag: str = OWNER_TAG) -> Rule:
    """Accept forwarded traffic entering (``-i``) or leaving (``-o``) an interface."""
    return Rule(
        table="filter",
        chain="FORWARD",
        matchers=("-i" if inbound else "-o", interface),
        target=RuleTarget.ACCEPT,
        tag=tag,
        insert=True,
    )


class SavedRule(BaseModel):
    """A rule line (``-A CHAIN ...``) read from an iptables-save dump."""

    model_config = ConfigDict(frozen=True)

    table: str
    tokens: tuple[str, ...]

    @property
    def chain(self) -> str:
        return self.tokens[1]

    def _value_after(self, flag: str) -> str | None:
        for index, token in enumerate(self.tokens[:-1]):
            if token == flag:
                return self.tokens[index + 1]
        return None

    @property
    def comment(self) -> str | None:
        return self._value_after("--comment")

    @property
    def target(self) -> str | None:
        return self._value_after("-j")

    def is_owned_by(self, tag: str) -> bool:
        """True if the rule carries ``tag`` and jumps to a target this manager creates."""
        return self.comment == tag and self.target in OWNED_TARGETS

    def delete_args(self) -> list[str]:
        return ["-t", self.table, "-D", *self.tokens[1:]]


def parse_saved_rules(dump: str) -> list[SavedRule]:
    """Parse iptables-save output into rule lines grouped by table."""
    rules: list[SavedRule] = []
    table: str | None = None

    for raw_line in dump.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("*"):
            table = line[1:]
            continue
        if line == "COMMIT":
            table = None
            continue
        if table is None or not line.startswith("-A "):
            continue

        try:
            tokens = shlex.split(line)
        except ValueError:
            logger.warning("Skipping unparsable rule line", line=line)
            continue
        if len(tokens) < 3:
            continue
        rules.append(SavedRule(table=table, tokens=tuple(tokens)))

    return rules
