"""Command line entry point."""

import argparse
import json
import signal
import sys
import threading
from collections.abc import Sequence
from typing import Any

from .common.exceptions import ConfigurationError, FirewallError
from .common.logging import get_logger, setup_logging
from .config import DEFAULT_CONFIG_PATH, default_config, load_config
from .firewall import FirewallReconciler
from .logs import LogBroadcastHub
from .service import ManagerService

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phantun-manager",
        description="Supervise Phantun tunnels and their firewall rules",
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="Path to configuration file"
    )
    parser.add_argument(
        "--log-level", default=None, help="Override the configured log level"
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    parser.add_argument("--log-file", default=None, help="Also write logs to a file")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Start enabled instances and supervise them")
    commands.add_parser("cleanup", help="Remove every firewall rule owned by the manager")
    commands.add_parser("rules", help="Print the IPv4 rule table")
    commands.add_parser("stats", help="Print counts of owned rules as JSON")
    return parser


def run(args: argparse.Namespace, stop_event: threading.Event | None = None) -> int:
    """Sanitize the firewall, start instances, and block until signalled."""
    hub = LogBroadcastHub()
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Warning: {e}. Using defaults.", file=sys.stderr)
        config = default_config(args.config)

    level = args.log_level or config.general.log_level.value
    setup_logging(level=level, json_format=args.json_logs, log_file=args.log_file, hub=hub)

    service = ManagerService(config, hub=hub)
    service.sanitize()

    stop = stop_event or threading.Event()

    def handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal", signal=signal.Signals(signum).name)
        stop.set()

    if stop_event is None:
        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    try:
        service.supervisor.start_all()
        stop.wait()
    finally:
        logger.info("Shutting down...")
        service.supervisor.stop_all()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "run"

    if command == "run":
        return run(args)

    setup_logging(level=args.log_level or "WARNING", json_format=args.json_logs)
    reconciler = FirewallReconciler()
    try:
        if command == "cleanup":
            removed = reconciler.cleanup_all()
            print(f"Removed {removed} rule(s)")
        elif command == "rules":
            print(reconciler.get_rules(), end="")
        elif command == "stats":
            print(json.dumps(reconciler.get_stats(), indent=2))
    except FirewallError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0
