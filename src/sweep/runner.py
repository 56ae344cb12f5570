#!/usr/bin/env python3
"""Main entry point for sweep."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from .client import SSHFleetClient
from .config import Config, load_config, validate_concurrency
from .coordinator import Coordinator, NodeStatus
from .errors import ConfigurationError

RUN_FLAGS = ("force", "noop", "splay", "ignoreschedules")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the Puppet agent across a fleet, a few nodes at a time"
    )
    parser.add_argument("config", type=Path, help="Path to YAML configuration file")
    parser.add_argument("--concurrency", type=int, help="How many nodes may run at once")
    parser.add_argument(
        "--force", action=argparse.BooleanOptionalAction, help="Run without splay"
    )
    parser.add_argument(
        "--noop", action=argparse.BooleanOptionalAction, help="Do a no-op run"
    )
    parser.add_argument("--environment", help="Agent environment to run in")
    parser.add_argument("--server", help="Puppet server, as host or host:port")
    parser.add_argument(
        "--splay", action=argparse.BooleanOptionalAction, help="Splay the runs"
    )
    parser.add_argument("--splaylimit", type=int, help="Maximum splay time in seconds")
    parser.add_argument(
        "--tag",
        action="append",
        default=None,
        help="Restrict the run to a tag (may be repeated)",
    )
    parser.add_argument(
        "--ignoreschedules",
        action=argparse.BooleanOptionalAction,
        help="Ignore resource schedules",
    )
    parser.add_argument(
        "--rerun",
        type=float,
        metavar="SECONDS",
        help="Repeat passes forever, starting them at most this often",
    )
    parser.add_argument("--key", type=Path, help="Override SSH key path from config")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> None:
    """Apply command line options on top of the loaded configuration."""
    run = config.run
    if args.concurrency is not None:
        run.concurrency = validate_concurrency(args.concurrency)
    for option in RUN_FLAGS + ("environment", "server", "splaylimit"):
        value = getattr(args, option)
        if value is not None:
            setattr(run, option, value)
    if args.tag:
        run.tag = [t for tag in args.tag for t in tag.split(",") if t]

    # Override SSH key if provided (applies to all nodes)
    if args.key:
        key_path = args.key.expanduser()
        config.defaults.ssh_key = key_path
        for node in config.nodes:
            node.ssh_key = key_path


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.dashboard and args.rerun is not None:
        print("Error: --rerun cannot be combined with --dashboard", file=sys.stderr)
        return 1

    # Load configuration
    try:
        config = load_config(args.config)
        apply_overrides(config, args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Validate all SSH keys exist
    ssh_keys = {node.ssh_key for node in config.nodes}
    for ssh_key in ssh_keys:
        if not ssh_key.exists():
            print(f"Error: SSH key not found: {ssh_key}", file=sys.stderr)
            return 1

    if args.dashboard:
        from .dashboard import Dashboard

        Dashboard(config).run()
        return 0

    return _run_headless(config, args.rerun)


def _run_headless(config: Config, rerun: float | None) -> int:
    """Run the coordinator printing to the terminal."""

    def on_log(line: str) -> None:
        print(f"{datetime.now():%Y-%m-%d %H:%M:%S} {line}")

    def on_status(node_name: str, status: NodeStatus) -> None:
        print(f"[{node_name}] Status: {status.value}")

    try:
        coordinator = Coordinator(SSHFleetClient(config.nodes), config.run, on_status=on_status)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    coordinator.logger(on_log)
    coordinator.runall(rerun is not None, rerun or 0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
