"""iptables rule management for Phantun instances."""

from .reconciler import FirewallReconciler
from .rules import (
    OWNER_TAG,
    RESERVED_ADMIN_PORT,
    Family,
    Rule,
    RuleTarget,
    SavedRule,
    parse_saved_rules,
)
from .runner import IptablesRunner, is_benign_failure

__all__ = [
    "FirewallReconciler",
    "IptablesRunner",
    "Family",
    "Rule",
    "RuleTarget",
    "SavedRule",
    "parse_saved_rules",
    "is_benign_failure",
    "OWNER_TAG",
    "RESERVED_ADMIN_PORT",
]
