"""CLI entry point for running SQL sources.

Usage:
    python -m sqlsource run ./orders.yaml
    python -m sqlsource run ./orders.yaml --once
    python -m sqlsource validate ./orders.yaml
    python -m sqlsource checkpoint ./orders.yaml
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional

from sqlsource.lib.checkpoint import CheckpointStore
from sqlsource.lib.config_loader import SourceConfig, load_config, validate_config
from sqlsource.lib.env import load_env_file
from sqlsource.lib.errors import CheckpointError, ConfigurationError
from sqlsource.lib.logging import setup_logging
from sqlsource.lib.poller import SqlSourcePoller

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def _load_or_exit(config_path: str) -> SourceConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)


def _install_signal_handlers(poller: SqlSourcePoller) -> None:
    if threading.current_thread() is not threading.main_thread():
        return

    def handler(signum: int, frame: Any) -> None:
        logger.info("Received signal %s, stopping after the current cycle", signum)
        poller.stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def run_command(args: argparse.Namespace) -> None:
    """Poll the configured tables until stopped."""
    config = _load_or_exit(args.config)
    logger.info("Starting source %s from %s", config.name, args.config)

    poller = SqlSourcePoller.from_config(config)
    _install_signal_handlers(poller)

    try:
        poller.start()
        if args.once:
            result = poller.poll_once()
            for table in result.tables:
                logger.info(
                    "%s: %s, %d record(s), watermark %s",
                    table.table,
                    table.outcome.value,
                    table.records_emitted,
                    table.position_after,
                )
            if not result.ok:
                sys.exit(1)
        else:
            poller.run(max_cycles=args.max_cycles)
    finally:
        poller.close()


def validate_command(args: argparse.Namespace) -> None:
    """Validate a configuration file without connecting."""
    issues = validate_config(args.config)
    if issues:
        print(f"Configuration {args.config} has {len(issues)} issue(s):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)

    config = _load_or_exit(args.config)
    print("Configuration OK")
    print()
    print(config.explain())


def checkpoint_command(args: argparse.Namespace) -> None:
    """Print stored watermark positions."""
    config = _load_or_exit(args.config)
    store = CheckpointStore(config.checkpoint_path)

    if not Path(store.path).exists():
        print(f"No checkpoint at {store.path}")
        return

    try:
        stored = store.read()
    except CheckpointError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Checkpoint: {store.path}")
    width = max([len(t.name) for t in config.tables] + [10])
    for table in config.tables:
        position = stored.get(table.name, "(not stored)")
        print(f"  {table.name:<{width}}  {position}")

    configured = {t.name for t in config.tables}
    extra = sorted(name for name in stored if name not in configured)
    if extra:
        print("Entries for tables no longer configured:")
        for name in extra:
            print(f"  {name:<{width}}  {stored[name]}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sql-source",
        description="Incrementally extract new rows from SQL tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Poll continuously
    sql-source run ./orders.yaml

    # Single cycle, useful from cron
    sql-source run ./orders.yaml --once

    # Check a config file
    sql-source validate ./orders.yaml

    # Show stored watermarks
    sql-source checkpoint ./orders.yaml
        """,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    common.add_argument(
        "--json-log",
        "--json-logs",
        dest="json_log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    common.add_argument(
        "--log-file",
        help="Write logs to a file in addition to console",
    )
    common.add_argument(
        "--env-file",
        help="Load environment variables from this .env file",
    )

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", parents=[common], help="Poll tables and emit new rows")
    run.add_argument("config", help="Path to the YAML configuration file")
    run.add_argument("--once", action="store_true", help="Run a single poll cycle")
    run.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many cycles",
    )
    run.set_defaults(func=run_command)

    validate = subparsers.add_parser("validate", parents=[common], help="Validate a configuration file")
    validate.add_argument("config", help="Path to the YAML configuration file")
    validate.set_defaults(func=validate_command)

    checkpoint = subparsers.add_parser("checkpoint", parents=[common], help="Show stored watermarks")
    checkpoint.add_argument("config", help="Path to the YAML configuration file")
    checkpoint.set_defaults(func=checkpoint_command)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    setup_logging(
        verbose=args.verbose,
        json_format=args.json_log,
        log_file=args.log_file,
    )
    load_env_file(args.env_file)

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
