"""Firewall reconciliation for Phantun instances.

Per-instance setup is idempotent (check before add) and per-instance cleanup
tolerates missing rules. ``cleanup_all`` is the authoritative teardown: it
reads the live tables and deletes every rule carrying the ownership tag,
whether or not the instance that created it is still configured.
"""

from collections.abc import Sequence

from ..common.exceptions import FirewallError, SafetyPolicyError
from ..common.logging import get_logger
from ..config import BaseInstanceConfig, ClientConfig, ServerConfig
from .rules import (
    OWNER_TAG,
    RESERVED_ADMIN_PORT,
    Family,
    Rule,
    RuleTarget,
    as_check_directive,
    dnat_to_peer,
    forward_accept,
    masquerade_destination,
    masquerade_source,
    parse_saved_rules,
)
from .runner import IptablesRunner

logger = get_logger(__name__)


class FirewallReconciler:
    """Applies and removes the NAT/forwarding rules tied to each instance."""

    def __init__(
        self,
        ipv4: IptablesRunner | None = None,
        ipv6: IptablesRunner | None = None,
        tag: str = OWNER_TAG,
        reserved_port: int = RESERVED_ADMIN_PORT,
    ):
        self.ipv4 = ipv4 or IptablesRunner(Family.IPV4)
        self.ipv6 = ipv6 or IptablesRunner(Family.IPV6)
        self.tag = tag
        self.reserved_port = reserved_port

    def _runner(self, family: Family) -> IptablesRunner:
        return self.ipv4 if family == Family.IPV4 else self.ipv6

    # -- single rules -------------------------------------------------------

    def ensure_rule(
        self, rule: Rule | Sequence[str], family: Family = Family.IPV4
    ) -> bool:
        """Add a rule unless an identical one already exists.

        Args:
            rule: A ``Rule`` or raw iptables arguments using ``-A``/``-I``
            family: Address family to apply the rule to

        Returns:
            True if the rule was added, False if it was already present

        Raises:
            FirewallError: If the check or the addition fails for a real reason
        """
        runner = self._runner(family)
        if isinstance(rule, Rule):
            check_args: list[str] | None = rule.check_args()
            add_args = rule.add_args()
        else:
            add_args = list(rule)
            check_args = as_check_directive(add_args)

        if check_args is not None and runner.check(check_args):
            logger.debug("Firewall rule already present", rule=" ".join(add_args))
            return False

        runner.apply(add_args)
        logger.info("Firewall rule added", family=family.value, rule=" ".join(add_args))
        return True

    def check_rule(self, rule: Rule, family: Family = Family.IPV4) -> bool:
        """Return True if the rule exists, False if it is absent."""
        return self._runner(family).check(rule.check_args())

    def delete_rule(self, rule: Rule, family: Family = Family.IPV4) -> bool:
        """Delete a rule; returns False if it was not present."""
        return self._runner(family).delete(rule.delete_args())

    # -- rule sets ----------------------------------------------------------

    def _guard_reserved_port(self, spec: BaseInstanceConfig) -> None:
        if spec.local_port == self.reserved_port:
            raise SafetyPolicyError(
                f"Refusing to use reserved port {self.reserved_port} as local port "
                f"of {spec.kind.value} '{spec.display_name}': this would lock out "
                "administrative access to the host"
            )

    def client_rules(self, spec: ClientConfig, family: Family = Family.IPV4) -> list[Rule]:
        spec = spec.with_defaults()  # type: ignore[assignment]
        peer = spec.tun_peer if family == Family.IPV4 else spec.tun_peer_ipv6
        return [masquerade_source(peer, family, tag=self.tag)]

    def server_nat_rules(
        self, spec: ServerConfig, family: Family = Family.IPV4
    ) -> list[Rule]:
        spec = spec.with_defaults()  # type: ignore[assignment]
        peer = spec.tun_peer if family == Family.IPV4 else spec.tun_peer_ipv6
        return [
            dnat_to_peer(spec.local_port, peer, tag=self.tag),
            masquerade_destination(peer, spec.remote_port, tag=self.tag),
        ]

    def server_forward_rules(self, spec: ServerConfig) -> list[Rule]:
        if not spec.tun_name:
            return []
        return [
            forward_accept(spec.tun_name, inbound=True, tag=self.tag),
            forward_accept(spec.tun_name, inbound=False, tag=self.tag),
        ]

    def instance_rules(
        self, spec: BaseInstanceConfig, family: Family = Family.IPV4
    ) -> list[Rule]:
        """Every rule an instance owns in one family."""
        if isinstance(spec, ClientConfig):
            return self.client_rules(spec, family)
        return self.server_nat_rules(spec, family) + self.server_forward_rules(spec)  # type: ignore[arg-type]

    def setup_client(self, spec: ClientConfig) -> None:
        """Masquerade traffic sourced from the client's tunnel peer (IPv4)."""
        self._guard_reserved_port(spec)
        for rule in self.client_rules(spec):
            self.ensure_rule(rule)

    def setup_client_ipv6(self, spec: ClientConfig) -> None:
        self._guard_reserved_port(spec)
        for rule in self.client_rules(spec, Family.IPV6):
            self.ensure_rule(rule, Family.IPV6)

    def setup_server(self, spec: ServerConfig) -> None:
        """DNAT the local port to the tunnel peer and open forwarding (IPv4).

        NAT rules are mandatory. The forwarding accepts only matter on hosts
        with a default-drop FORWARD policy, so failures there are warnings.
        """
        self._guard_reserved_port(spec)
        for rule in self.server_nat_rules(spec):
            self.ensure_rule(rule)
        self._ensure_forwarding(spec, Family.IPV4)

    def setup_server_ipv6(self, spec: ServerConfig) -> None:
        self._guard_reserved_port(spec)
        for rule in self.server_nat_rules(spec, Family.IPV6):
            self.ensure_rule(rule, Family.IPV6)
        self._ensure_forwarding(spec, Family.IPV6)

    def _ensure_forwarding(self, spec: ServerConfig, family: Family) -> None:
        for rule in self.server_forward_rules(spec):
            try:
                self.ensure_rule(rule, family)
            except FirewallError as e:
                logger.warning(
                    "Failed to add FORWARD rule",
                    family=family.value,
                    interface=spec.tun_name,
                    error=str(e),
                )

    def cleanup_client(self, spec: ClientConfig) -> bool:
        return self.delete_rules(self.client_rules(spec), Family.IPV4)

    def cleanup_client_ipv6(self, spec: ClientConfig) -> bool:
        return self.delete_rules(self.client_rules(spec, Family.IPV6), Family.IPV6)

    def cleanup_server(self, spec: ServerConfig) -> bool:
        rules = self.server_nat_rules(spec) + self.server_forward_rules(spec)
        return self.delete_rules(rules, Family.IPV4)

    def cleanup_server_ipv6(self, spec: ServerConfig) -> bool:
        rules = self.server_nat_rules(spec, Family.IPV6) + self.server_forward_rules(spec)
        return self.delete_rules(rules, Family.IPV6)

    def delete_rules(self, rules: list[Rule], family: Family) -> bool:
        """Delete each rule, continuing past failures.

        Returns:
            True if every rule is gone (deleted or already absent)
        """
        clean = True
        for rule in rules:
            try:
                if self.delete_rule(rule, family):
                    logger.info("Firewall rule removed", family=family.value, rule=rule.describe())
            except FirewallError as e:
                clean = False
                logger.warning("Failed to remove firewall rule", rule=rule.describe(), error=str(e))
        return clean

    # -- global purge -------------------------------------------------------

    def cleanup_all(self) -> int:
        """Delete every rule tagged as owned by this manager, in both families.

        The IPv4 table must be readable; an unreadable IPv6 table (no
        ip6tables on the host) is logged and skipped. Failures deleting
        individual rules are logged and the sweep continues.

        Returns:
            Number of rules deleted

        Raises:
            FirewallError: If the IPv4 rule table cannot be read
        """
        removed = self._purge_family(Family.IPV4)
        try:
            removed += self._purge_family(Family.IPV6)
        except FirewallError as e:
            logger.warning("Skipping IPv6 firewall cleanup", error=str(e))
        return removed

    def _purge_family(self, family: Family) -> int:
        runner = self._runner(family)
        dump = runner.save()
        owned = [rule for rule in parse_saved_rules(dump) if rule.is_owned_by(self.tag)]

        removed = 0
        for rule in owned:
            args = rule.delete_args()
            logger.info("Cleaning rule", family=family.value, rule=" ".join(args))
            try:
                if runner.delete(args):
                    removed += 1
            except FirewallError as e:
                logger.error("Failed to delete rule", rule=" ".join(args), error=str(e))
        return removed

    # -- introspection ------------------------------------------------------

    def get_rules(self, family: Family = Family.IPV4) -> str:
        """Return the raw iptables-save dump."""
        return self._runner(family).save()

    def get_stats(self) -> dict[str, int]:
        """Count owned IPv4 rules by kind."""
        stats = {"masquerade": 0, "dnat": 0, "forward": 0}
        for rule in parse_saved_rules(self.get_rules()):
            if rule.comment != self.tag:
                continue
            if rule.target == RuleTarget.MASQUERADE.value:
                stats["masquerade"] += 1
            elif rule.target == RuleTarget.DNAT.value:
                stats["dnat"] += 1
            elif rule.target == RuleTarget.ACCEPT.value and rule.chain == "FORWARD":
                stats["forward"] += 1
        stats["total"] = stats["masquerade"] + stats["dnat"] + stats["forward"]
        return stats
